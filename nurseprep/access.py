"""
Entitlement checks consumed once when a session starts.
Payment and access-code redemption happen elsewhere; this only reads the result.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from .models import AccessDecision, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class AccessChecker:
    """Answers 'can this user start this exam'."""

    def can_start(self, user_id: str, exam_id: str) -> AccessDecision:
        raise NotImplementedError


class OpenAccess(AccessChecker):
    """Everyone may start and retry (practice mode)."""

    def can_start(self, user_id: str, exam_id: str) -> AccessDecision:
        return AccessDecision(can_start=True, can_retry=True)


class SupabaseAccessChecker(AccessChecker):
    """Reads the `user_access` row written by the payment / access-code flows."""

    def __init__(self, client, admin_emails: Iterable[str] = (), clock: Callable[[], datetime] = utcnow):
        self.client = client
        self.admin_emails = {e.lower() for e in admin_emails}
        self.clock = clock

    def _is_admin(self, user_id: str) -> bool:
        if not self.admin_emails:
            return False
        response = self.client.table("users").select("email").eq("id", str(user_id)).limit(1).execute()
        rows = response.data or []
        return bool(rows) and (rows[0].get("email") or "").lower() in self.admin_emails

    def can_start(self, user_id: str, exam_id: str) -> AccessDecision:
        try:
            if self._is_admin(user_id):
                return AccessDecision(can_start=True, can_retry=True)

            response = self.client.table("user_access").select("*").eq("user_id", str(user_id)).limit(1).execute()
            rows = response.data or []
        except Exception as e:
            logger.error(f"Error checking exam access for {user_id}: {e}")
            return AccessDecision(can_start=False, reason="System error. Please try again.")

        if not rows:
            return AccessDecision(
                can_start=False,
                reason="No access permissions found. Please purchase exam access or redeem an access code.",
            )
        return self.decide(rows[0], exam_id)

    def decide(self, access: dict, exam_id: str) -> AccessDecision:
        """Apply the access rules to one user_access row."""
        max_attempts = access.get("max_attempts")
        remaining = int(access.get("remaining_attempts") or 0)
        used = (int(max_attempts) - remaining) if max_attempts is not None else 0

        def deny(reason: str) -> AccessDecision:
            return AccessDecision(can_start=False, reason=reason, attempts_used=used, max_attempts=max_attempts)

        if not access.get("is_active", False):
            return deny("Access has been deactivated")
        if access.get("is_restricted"):
            return deny(f"Access restricted: {access.get('restriction_reason') or 'Contact admin'}")

        expiry: Optional[datetime] = parse_timestamp(access.get("expiry_date"))
        if expiry is not None and self.clock() > expiry:
            return deny("Access has expired")

        previous = (access.get("attempts_made") or {}).get(exam_id)
        if previous:
            if previous.get("completed"):
                return deny("Exam already completed. You can review your answers.")
            # Unfinished attempt: allowed to continue it
            return AccessDecision(can_start=True, attempts_used=used, max_attempts=max_attempts)

        if remaining <= 0:
            return deny("No remaining attempts")
        return AccessDecision(
            can_start=True, attempts_used=used, max_attempts=max_attempts, can_retry=remaining > 1
        )
