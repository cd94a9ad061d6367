"""
Scheduled jobs.

Jobs:
    - escalation_sweep: reminders, supervisor escalation and final
      escalation for open authorization workflows
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)

ESCALATION_SWEEP = "escalation_sweep"


@register_job(ESCALATION_SWEEP)
def run_escalation_sweep(app) -> dict[str, Any]:
    """Sweep open authorization workflows and apply the escalation ladder."""
    from app.services.escalation import EscalationService

    summary = EscalationService().process_escalations()
    if summary["errors"]:
        logger.warning("Escalation sweep finished with %d error(s)", summary["errors"])
    return summary
