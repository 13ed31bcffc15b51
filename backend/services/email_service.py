from postmarker.core import PostmarkClient
from database import database
from models import MessageLog, AuditAction
from utils.audit import create_audit_log
from datetime import datetime, timezone
import html
import os
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "hello@staffix.io")
PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Staffix")


def render_placeholders(template: str, model: Dict[str, Any]) -> str:
    """Replace {{key}} placeholders; unknown placeholders are left as-is."""
    rendered = template or ""
    for key, value in model.items():
        rendered = rendered.replace("{{" + key + "}}", "" if value is None else str(value))
    return rendered


class EmailService:
    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_email(
        self,
        recipient: str,
        subject: str,
        text_body: str,
        business_id: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> MessageLog:
        """Send a plain-text email (HTML part derived from it) and record the delivery."""
        db = database.get_db()

        message_log = MessageLog(
            business_id=business_id,
            recipient=recipient,
            subject=subject,
            tag=tag,
            status="queued"
        )

        try:
            if self.client:
                response = self.client.emails.send(
                    From=DEFAULT_SENDER,
                    To=recipient,
                    Subject=subject,
                    HtmlBody=self._build_html_body(text_body),
                    TextBody=text_body,
                    TrackOpens=True,
                    TrackLinks="HtmlOnly",
                    Tag=tag
                )
                message_log.postmark_message_id = response["MessageID"]
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"Email sent to {recipient}: {response['MessageID']}")
            else:
                # Dev mode - just log
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"[DEV MODE] Email logged (not sent) to {recipient}: {subject}")

        except Exception as e:
            message_log.status = "failed"
            message_log.error_message = str(e)
            logger.error(f"Failed to send email to {recipient}: {e}")

        await db.message_logs.insert_one(message_log.model_dump())

        await create_audit_log(
            action=AuditAction.EMAIL_SENT if message_log.status == "sent" else AuditAction.EMAIL_FAILED,
            business_id=business_id,
            metadata={
                "tag": tag,
                "status": message_log.status,
                "recipient": recipient,
                "error": message_log.error_message,
            }
        )

        return message_log

    def _build_html_body(self, text_body: str) -> str:
        paragraphs = "".join(
            f"<p style=\"margin:0 0 12px 0;\">{html.escape(block).replace(chr(10), '<br>')}</p>"
            for block in text_body.split("\n\n") if block.strip()
        )
        return f"""
        <html>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color:#1f2937;">
            <div style="max-width:600px;margin:0 auto;padding:24px;">
                {paragraphs}
                <hr style="border:none;border-top:1px solid #e5e7eb;margin:24px 0;">
                <p style="font-size:12px;color:#6b7280;">{html.escape(PRODUCT_NAME)}</p>
            </div>
        </body>
        </html>
        """

email_service = EmailService()
