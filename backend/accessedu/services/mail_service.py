"""Subscription notification emails (payment failed, cancelled)"""
import resend

from accessedu.core.logging import get_logger

logger = get_logger(__name__)


class MailNotifier:
    def __init__(self, api_key: str, from_email: str, site_name: str, site_url: str):
        self.api_key = api_key
        self.from_email = from_email
        self.site_name = site_name
        self.site_url = site_url

    def _send(self, to_email: str, subject: str, html: str, kind: str) -> bool:
        if not self.api_key:
            logger.info(f"RESEND_API_KEY not set, skipping {kind} email: {to_email}")
            return False
        if not to_email:
            logger.warning(f"No recipient for {kind} email")
            return False
        try:
            resend.api_key = self.api_key
            resend.Emails.send({
                "from": self.from_email,
                "to": [to_email],
                "subject": subject,
                "html": html,
            })
            logger.info(f"{kind} email sent: {to_email}")
            return True
        except Exception as e:
            logger.error(f"{kind} email failed: {to_email} - {e}")
            return False

    def payment_failed(self, sub) -> bool:
        """Renewal charge failed"""
        html = f"""
        <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
            <h2>{self.site_name}</h2>
            <p>Hello,</p>
            <p>We could not collect the payment for your {sub.plan_name or sub.plan_code} subscription.</p>
            <p>Please update your card or pay again to keep access to your scholarship alerts and resources.</p>
            <p><a href="{self.site_url}/subscription">Manage subscription</a></p>
        </div>
        """
        return self._send(sub.email, f"[{self.site_name}] Payment failed", html, "payment_failed")

    def subscription_cancelled(self, sub) -> bool:
        html = f"""
        <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
            <h2>{self.site_name}</h2>
            <p>Hello,</p>
            <p>Your {sub.plan_name or sub.plan_code} subscription has been cancelled.</p>
            <p>You can reactivate it at any time from your account.</p>
            <p><a href="{self.site_url}/pricing">View plans</a></p>
        </div>
        """
        return self._send(sub.email, f"[{self.site_name}] Subscription cancelled", html, "subscription_cancelled")
