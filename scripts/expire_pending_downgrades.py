"""
Apply pending downgrades whose tolerance window is over, then lapse expired manual activations.
Same transitions the in-process sweep runs; use it from cron when RUN_DOWNGRADE_SWEEP is off.
"""
import sys
import os
from datetime import datetime, timezone

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.config import logger
from core.database import init_db
from utils.subscription_state import expire_manual_activation, expire_pending
from utils.webhook_processor import get_engine


def expire_pending_downgrades(dry_run: bool = True) -> list[str]:
    """
    Downgrade every user whose pending downgrade is due.

    Args:
        dry_run: If True, only log what would be changed without making changes
    """
    init_db()
    engine = get_engine()
    now = datetime.now(timezone.utc)

    logger.info("=" * 60)
    logger.info(f"Starting pending downgrade sweep (dry_run={dry_run}) at {now.isoformat()}")
    logger.info("=" * 60)

    if not dry_run:
        expired = engine.run_expiry_sweep(now)
        logger.info(f"Downgraded: {len(expired)}")
        for email in expired:
            logger.info(f"  - {email}")
        return expired

    due = []
    for user in engine.store.list_pending_downgrades(now):
        transition = expire_pending(user, now)
        if transition.mutates:
            logger.info(
                f"[DRY RUN] Would downgrade {user.email}: {user.plan.value} -> free "
                f"(scheduled {user.pending_downgrade.scheduled_for.isoformat()}, {user.pending_downgrade.reason})"
            )
            due.append(user.email)
    logger.info(f"Due: {len(due)}")
    logger.info("This was a DRY RUN. No changes were made. Run with --live to apply.")
    return due


def expire_manual_activations(dry_run: bool = True) -> list[str]:
    """Move manual activations past their period to the free plan."""
    init_db()
    engine = get_engine()
    now = datetime.now(timezone.utc)
    logger.info(f"Starting manual activation sweep (dry_run={dry_run}) at {now.isoformat()}")

    if not dry_run:
        lapsed = engine.run_manual_activation_sweep(now)
        logger.info(f"Manual activations expired: {len(lapsed)}")
        for email in lapsed:
            logger.info(f"  - {email}")
        return lapsed

    due = []
    for user in engine.store.list_manual_activations():
        transition = expire_manual_activation(user, now, engine.policy)
        if transition.mutates:
            logger.info(f"[DRY RUN] {user.email}: {transition.message}")
            if transition.changes.get("plan") is not None:
                due.append(user.email)
    logger.info(f"Due: {len(due)}")
    return due


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Apply pending subscription downgrades')
    parser.add_argument('--live', action='store_true', help='Actually apply changes (default is dry run)')

    args = parser.parse_args()

    try:
        expire_pending_downgrades(dry_run=not args.live)
        expire_manual_activations(dry_run=not args.live)
    except Exception as ex:
        logger.error(f"Sweep failed: {ex}")
        sys.exit(1)
