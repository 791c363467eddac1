"""Fire-and-forget customer notifications."""
import threading

from core.config import logger
from utils.emailing import send_welcome_email


class EmailNotifier:
    def _deliver(self, email: str, name: str, temporary_credential: str, plan_name: str) -> None:
        try:
            sent = send_welcome_email(email, name, temporary_credential, plan_name)
            if not sent:
                logger.warning(f"[subscriptions.notify] welcome email not sent to {email}")
        except Exception as ex:
            logger.warning(f"[subscriptions.notify] welcome email failed for {email}: {ex}")

    def send_welcome(self, email: str, name: str, temporary_credential: str, plan_name: str = "") -> None:
        # Send email in background thread so the webhook never waits on SMTP
        thread = threading.Thread(
            target=self._deliver,
            args=(email, name, temporary_credential, plan_name),
        )
        thread.daemon = True
        thread.start()
