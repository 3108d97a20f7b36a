"""
Synthesis Service - Referral Collaborators

Stand-ins for the external telemedicine and notification systems.
Both only log; delivery is owned by those systems.
"""

from __future__ import annotations

import logging
from uuid import uuid4

from models import UrgencyLevel

logger = logging.getLogger(__name__)


class TelemedicineAdapter:
    def send_escalation(self, case_summary: str, urgency_level: UrgencyLevel, specialist_type: str) -> str:
        referral_id = str(uuid4())
        logger.info(
            "Sending %s escalation to %s specialist (referral %s, %d summary chars)",
            urgency_level.value,
            specialist_type,
            referral_id,
            len(case_summary),
        )
        return referral_id


class NotificationService:
    def notify_escalation(self, consultation_id: int, referral_id: str) -> None:
        logger.info("Escalation notification: consultation %s referred as %s", consultation_id, referral_id)
