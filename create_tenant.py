"""
Create a law firm (tenant) with its billing record and members.

Sets up:
- Default FREE billing record (20 trial credits), or a paid plan
- Membership rows mapping each user to the firm
- Optionally, a session JWT per member for local testing

Usage:
    python create_tenant.py --user-id <uuid> [--user-id <uuid> ...]
    python create_tenant.py --tenant-id <uuid> --plan SOLO --valid-days 30
"""

import sys
import uuid
import logging
import argparse
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger(__name__)


def main():
    from execution.legal_ai.billing import Plan, get_plan_config, utcnow

    arg_parser = argparse.ArgumentParser(description="Create a law firm tenant")
    arg_parser.add_argument(
        "--tenant-id",
        type=str,
        default=None,
        help="Tenant UUID (default: a new random UUID)",
    )
    arg_parser.add_argument(
        "--user-id",
        type=str,
        action="append",
        default=[],
        help="Member user UUID (repeatable)",
    )
    arg_parser.add_argument(
        "--plan",
        type=str,
        choices=[p.value for p in Plan],
        default=Plan.FREE.value,
        help="Plan to assign (default: FREE)",
    )
    arg_parser.add_argument(
        "--valid-days",
        type=int,
        default=30,
        help="Subscription length in days for paid plans (default: 30)",
    )
    arg_parser.add_argument(
        "--print-token",
        action="store_true",
        help="Print a session JWT for each member (requires JWT_SECRET)",
    )
    args = arg_parser.parse_args()

    from execution.legal_ai.gate import BillingGate
    from execution.legal_ai.store import create_store

    tenant_id = args.tenant_id or str(uuid.uuid4())

    store = create_store()
    if hasattr(store, "initialize_schema"):
        store.initialize_schema()
        try:
            store.enable_rls()
        except Exception as e:
            logger.warning(f"RLS setup: {e}")

    gate = BillingGate(store)
    gate.ensure_billing(tenant_id)
    logger.info(f"Billing record ready: tenant_id={tenant_id}")

    plan_config = get_plan_config(args.plan)
    if plan_config.requires_subscription:
        valid_until = utcnow() + timedelta(days=args.valid_days)
        gate.set_plan(tenant_id, plan_config.name, valid_until)
        logger.info(f"  Plan: {plan_config.display_name} until {valid_until.isoformat()}")

    if len(args.user_id) > plan_config.max_users:
        logger.warning(
            f"{len(args.user_id)} members exceed the {plan_config.display_name} seat limit "
            f"({plan_config.max_users})"
        )

    for user_id in args.user_id:
        store.add_tenant_member(tenant_id, user_id)
        logger.info(f"  Member added: {user_id}")

    status = gate.get_billing_status(tenant_id)

    print("\n" + "=" * 60)
    print("TENANT CREATED SUCCESSFULLY")
    print("=" * 60)
    print(f"Tenant ID:      {tenant_id}")
    print(f"Plan:           {status.plan.value}")
    print(f"Trial credits:  {status.trial_credits_remaining}/{status.trial_credits_total}")
    print(f"Members:        {len(args.user_id)}")

    if args.print_token and args.user_id:
        from execution.legal_ai.auth import create_session_jwt
        print("\nSession tokens:")
        for user_id in args.user_id:
            print(f"  {user_id}: {create_session_jwt(user_id)}")
    print("=" * 60)

    store.close()


if __name__ == "__main__":
    main()
