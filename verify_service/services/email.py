"""
Email Delivery Provider: AWS SES through aioboto3.
"""

from html import escape

import aioboto3

from verify_service.settings import settings

VERIFY_SUBJECT = "Verify your email to start optimizing your resume"


async def send_email(to_addr: str, subject: str, body: str) -> None:
    """Send one HTML message. SES errors propagate to the caller."""
    session = aioboto3.Session(region_name=settings.AWS_REGION)

    async with session.client("ses") as ses:
        await ses.send_email(
            Source=settings.MAIL_FROM,
            Destination={"ToAddresses": [to_addr]},
            Message={
                "Subject": {"Data": subject},
                "Body": {"Html": {"Data": body}},
            },
        )


def render_verification_email(verify_url: str, expires_in_minutes: int) -> str:
    link = escape(verify_url, quote=True)
    # inline styles only; most mail clients strip <style> blocks
    return f"""<!DOCTYPE html>
<html>
<body style="margin:0;padding:32px 16px;background:#f6f7f9;font-family:Arial,sans-serif;color:#222;">
  <div style="max-width:560px;margin:0 auto;background:#fff;border-radius:8px;padding:32px;">
    <h2 style="margin-top:0;">Confirm your email address</h2>
    <p>Confirm this address to unlock resume optimization.</p>
    <p style="text-align:center;margin:28px 0;">
      <a href="{link}" style="background:#1f6feb;color:#fff;padding:12px 28px;border-radius:6px;text-decoration:none;">Verify email</a>
    </p>
    <p style="font-size:13px;color:#555;">If the button does not work, open this link:<br>
      <a href="{link}" style="word-break:break-all;">{link}</a>
    </p>
    <p style="font-size:13px;color:#555;">The link can be used once and expires in {expires_in_minutes} minutes.
      If you did not create an account, ignore this email.</p>
  </div>
</body>
</html>
"""
