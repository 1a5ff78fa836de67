import pytest
from unittest.mock import AsyncMock, patch
from botocore.exceptions import ClientError

from verify_service.services.email import (
    VERIFY_SUBJECT,
    render_verification_email,
    send_email,
)
from verify_service.settings import settings


def _wire_ses(mock_aioboto3) -> AsyncMock:
    mock_session = mock_aioboto3.Session.return_value
    mock_ses_client = AsyncMock()
    mock_session.client.return_value.__aenter__.return_value = mock_ses_client
    return mock_ses_client


@pytest.mark.asyncio
@patch("verify_service.services.email.aioboto3")
async def test_send_verification_email_through_ses(mock_aioboto3):
    """
    The rendered verification email goes out through the aioboto3 SES client.
    """
    mock_ses_client = _wire_ses(mock_aioboto3)
    body = render_verification_email("http://test/verification/redeem?token=a.b.c", 60)

    await send_email(to_addr="reader@x.com", subject=VERIFY_SUBJECT, body=body)

    mock_aioboto3.Session.assert_called_with(region_name=settings.AWS_REGION)
    mock_aioboto3.Session.return_value.client.assert_called_with("ses")
    mock_ses_client.send_email.assert_called_once_with(
        Source=settings.MAIL_FROM,
        Destination={"ToAddresses": ["reader@x.com"]},
        Message={
            "Subject": {"Data": VERIFY_SUBJECT},
            "Body": {"Html": {"Data": body}},
        },
    )


@pytest.mark.asyncio
@patch("verify_service.services.email.aioboto3")
async def test_ses_rejection_propagates(mock_aioboto3):
    mock_ses_client = _wire_ses(mock_aioboto3)
    mock_ses_client.send_email.side_effect = ClientError(
        {"Error": {"Code": "MessageRejected", "Message": "Email address is not verified."}},
        "SendEmail",
    )

    with pytest.raises(ClientError):
        await send_email(to_addr="reader@x.com", subject=VERIFY_SUBJECT, body="<p>x</p>")


def test_verification_email_carries_link_and_expiry():
    url = "http://test/verification/redeem?token=a.b.c"
    body = render_verification_email(url, 45)

    assert body.count(f'href="{url}"') == 2
    assert "expires in 45 minutes" in body
