"""
hdfund CLI - keep HD-derived accounts funded from a root account.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger
from pydantic import ValidationError

from hdfund.chain.jsonrpc import JsonRpcChainClient
from hdfund.config import Settings
from hdfund.engine import DistributionEngine, RunReport
from hdfund.errors import HDFundError
from hdfund.wallet.deriver import AccountDeriver

app = typer.Typer(
    name="hdfund",
    help="Fund, monitor and reclaim HD-derived accounts",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def build_engine(settings: Settings, client: JsonRpcChainClient) -> DistributionEngine:
    deriver = AccountDeriver.from_mnemonic(
        settings.load_mnemonic(),
        passphrase=settings.mnemonic_passphrase.get_secret_value(),
        path_template=settings.derivation_path,
        max_accounts=settings.max_accounts,
    )
    return DistributionEngine(
        deriver,
        client,
        settings.policy(),
        account_count=settings.account_count,
        poll_interval=settings.poll_interval,
        submit_policy=settings.submit_policy(),
        confirm_policy=settings.confirm_policy(),
        call_timeout=settings.rpc_timeout,
        chain_id=settings.chain_id,
        poll_concurrency=settings.poll_concurrency,
        reclaim_concurrency=settings.reclaim_concurrency,
    )


async def _run(settings: Settings, mode: str) -> int:
    client = JsonRpcChainClient(
        rpc_url=settings.rpc_url,
        timeout=settings.rpc_timeout,
        gas_limit=settings.gas_limit,
        confirmations=settings.confirmations,
    )
    try:
        engine = build_engine(settings, client)

        if mode == "show":
            await engine.show()
            return 0

        report: RunReport
        if mode == "init-dist":
            report = await engine.init_dist()
        elif mode == "reclaim":
            report = await engine.reclaim()
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, engine.stop)
            try:
                report = await engine.cont_fund()
            finally:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(sig)

        return report.exit_code
    finally:
        await client.close()


@app.command()
def main(
    init_dist: Annotated[
        bool, typer.Option("--init-dist", help="Fund every account up to the target, once")
    ] = False,
    cont_fund: Annotated[
        bool,
        typer.Option("--cont-fund", help="Top up accounts below threshold until interrupted"),
    ] = False,
    reclaim: Annotated[
        bool, typer.Option("--reclaim", help="Sweep balances above reserve back to root")
    ] = False,
    show: Annotated[
        bool, typer.Option("--show", help="Print derived accounts and their balances")
    ] = False,
    mnemonic_file: Annotated[
        Path | None,
        typer.Option("--mnemonic-file", "-f", help="Path to mnemonic file (else MNEMONIC)"),
    ] = None,
    rpc_url: Annotated[str | None, typer.Option("--rpc-url", help="Node RPC URL")] = None,
    account_count: Annotated[
        int | None, typer.Option("--accounts", "-n", help="Number of derived accounts")
    ] = None,
    threshold: Annotated[
        int | None, typer.Option("--threshold", help="Top up below this balance")
    ] = None,
    target: Annotated[int | None, typer.Option("--target", help="Top up to this balance")] = None,
    reserve: Annotated[
        int | None, typer.Option("--reserve", help="Balance left behind on reclaim")
    ] = None,
    poll_interval: Annotated[
        float | None, typer.Option("--interval", help="Seconds between balance checks")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l")] = None,
) -> None:
    """Run one of the funding modes."""
    modes = [
        name
        for name, selected in (
            ("init-dist", init_dist),
            ("cont-fund", cont_fund),
            ("reclaim", reclaim),
            ("show", show),
        )
        if selected
    ]
    if len(modes) != 1:
        raise typer.BadParameter(
            "Choose exactly one of --init-dist, --cont-fund, --reclaim, --show"
        )

    overrides = {
        "mnemonic_file": mnemonic_file,
        "rpc_url": rpc_url,
        "account_count": account_count,
        "funding_threshold": threshold,
        "funding_target": target,
        "reclaim_reserve": reserve,
        "poll_interval": poll_interval,
        "log_level": log_level,
    }
    try:
        settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
        settings.policy()  # cross-field checks, e.g. target >= threshold
    except ValidationError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(2)

    setup_logging(settings.log_level)

    try:
        exit_code = asyncio.run(_run(settings, modes[0]))
    except (ValueError, HDFundError) as e:
        logger.error(str(e))
        raise typer.Exit(1)

    raise typer.Exit(exit_code)


def run() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    run()
