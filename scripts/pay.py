"""Send one payment from the configured wallet, interactively.

Initiates a session, prints the authorization URL, waits for the user to
approve the grant in a browser, then completes the payment. Uses the same
orchestrator as the HTTP service; credentials come from the environment.
"""

import argparse
import asyncio
import json

from ilppay.common.config import settings
from ilppay.common.errors import PaymentFlowError
from ilppay.services.orchestrator.service import build_orchestrator


async def run(receiving_wallet: str, amount: str, assume_yes: bool) -> int:
    """Drive initiate -> user authorization -> complete, cancelling on abort."""

    try:
        orchestrator = build_orchestrator(settings)
    except PaymentFlowError as exc:
        print(f"{exc.kind}: {exc.message}")
        return 2
    try:
        initiated = await orchestrator.initiate(receiving_wallet, amount)
        debit = initiated.debit_amount
        print(f"Session {initiated.session_id} created.")
        print(f"Debit amount: {debit.value} {debit.asset_code} (scale {debit.asset_scale})")
        print(f"Authorize the payment at:\n  {initiated.authorization_url}")

        if not assume_yes:
            answer = await asyncio.to_thread(input, "Press Enter once authorized (or type 'c' to cancel): ")
            if answer.strip().lower() == "c":
                await orchestrator.cancel(initiated.session_id)
                print("Session cancelled.")
                return 1

        completed = await orchestrator.complete(initiated.session_id)
        print("Payment completed:")
        print(json.dumps(completed.model_dump(mode="json", by_alias=True), indent=2))
        return 0
    except PaymentFlowError as exc:
        print(f"{exc.kind}: {exc.message}")
        for detail in getattr(exc, "errors", []):
            print(f"  - {detail}")
        return 2
    finally:
        await orchestrator.gateway.close()
        await orchestrator.store.close()


def main() -> None:
    """Parse CLI args and run one interactive payment."""

    parser = argparse.ArgumentParser(description="Send an Open Payments payment from the configured wallet.")
    parser.add_argument("--wallet", required=True, help="Receiving wallet address URL (https)")
    parser.add_argument("--amount", required=True, help="Amount in the receiver's minor units")
    parser.add_argument("--yes", action="store_true", help="Do not wait; complete immediately")
    args = parser.parse_args()

    raise SystemExit(asyncio.run(run(args.wallet, args.amount, args.yes)))


if __name__ == "__main__":
    main()
