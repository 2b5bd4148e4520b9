"""
Release Sweep Jobs

Entry points invoked periodically by the scheduler, with no payload:
- run_release_sweep: auto-releases overdue holds and retries failed dispute settlements
- run_stuck_release_recovery: resolves holds left in releasing by a crashed worker

Both return the pass summary so callers and logs can see what happened.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from services.escrow_service import EscrowService, get_escrow_service
from services.release_orchestrator import SweepSummary

logger = logging.getLogger(__name__)


class ReleaseSweepJob:
    """Stateless wrappers around the escrow sweep operations"""

    def __init__(self, service: Optional[EscrowService] = None):
        self._service = service
        self.execution_count = 0

    @property
    def service(self) -> EscrowService:
        return self._service or get_escrow_service()

    async def run_release_sweep(self) -> Dict[str, Any]:
        start_time = datetime.now(timezone.utc)
        try:
            summary = await self.service.run_release_sweep()
        except Exception as e:
            # A broken pass must not kill the scheduler; the next one retries
            logger.error(f"❌ RELEASE_SWEEP_JOB: pass failed: {e}", exc_info=True)
            return SweepSummary(errors=[str(e)]).to_dict()

        self.execution_count += 1
        elapsed_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        if summary["processed"]:
            logger.info(
                f"⏰ RELEASE_SWEEP_JOB: #{self.execution_count} processed={summary['processed']} "
                f"released={summary['released']} failed={summary['failed']} in {elapsed_ms:.0f}ms"
            )
        else:
            logger.debug(f"⏰ RELEASE_SWEEP_JOB: #{self.execution_count} nothing due ({elapsed_ms:.0f}ms)")
        return summary

    async def run_stuck_release_recovery(self) -> Dict[str, Any]:
        try:
            return await self.service.recover_stuck_releases()
        except Exception as e:
            logger.error(f"❌ RELEASE_RECOVERY_JOB: pass failed: {e}", exc_info=True)
            return SweepSummary(errors=[str(e)]).to_dict()


# Global job instance
release_sweep_job = ReleaseSweepJob()


async def run_release_sweep() -> Dict[str, Any]:
    """Scheduler entry point for the auto-release sweep"""
    return await release_sweep_job.run_release_sweep()


async def run_stuck_release_recovery() -> Dict[str, Any]:
    """Scheduler entry point for the releasing-state recovery pass"""
    return await release_sweep_job.run_stuck_release_recovery()
