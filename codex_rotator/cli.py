from __future__ import annotations

import argparse
import logging

import anyio

from codex_rotator.core.balancer import DEFAULT_STRATEGY, ROTATION_STRATEGIES, ineligibility_reason, normalize_strategy
from codex_rotator.core.config.settings import Settings, get_settings
from codex_rotator.core.errors import StorageError
from codex_rotator.core.utils.time import format_epoch_ms, now_ms
from codex_rotator.dependencies import RotatorContext, build_context, rotator_context
from codex_rotator.modules.accounts.domain import format_account_label, get_domain
from codex_rotator.modules.accounts.schemas import AUTH_MODES, AuthMode

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings, verbose: bool) -> None:
    level = logging.DEBUG if (verbose or settings.rotation_debug) else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage rotated Codex OAuth accounts.")
    parser.add_argument("--mode", choices=AUTH_MODES, default="native", help="Account domain (default: native).")
    parser.add_argument("--verbose", action="store_true", help="Log selection traces and debug output.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show every account and whether it is selectable right now.")

    for name, help_text in (
        ("enable", "Re-enable an account and clear its cooldown."),
        ("disable", "Exclude an account from rotation."),
        ("remove", "Delete an account from the accounts file."),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("identity_key", help="Identity key as printed by `status`.")

    strategy = subparsers.add_parser("strategy", help="Set the rotation strategy stored for the domain.")
    strategy.add_argument("strategy", choices=(*ROTATION_STRATEGIES, "default"))

    subparsers.add_parser("prune-affinity", help="Drop session affinity entries for sessions that no longer exist.")
    subparsers.add_parser("refresh", help="Refresh tokens that expire within the proactive refresh buffer.")
    subparsers.add_parser("sync-quota", help="Cool down accounts whose usage quota is exhausted.")

    return parser


async def _status(context: RotatorContext, mode: AuthMode) -> int:
    document = await context.repository.load(lock=False)
    domain = get_domain(document, mode)
    if domain is None:
        print(f"mode={mode} accounts=0")
        return 0
    now = now_ms()
    strategy = context.settings.rotation_strategy or domain.strategy or DEFAULT_STRATEGY
    print(f"mode={mode} strategy={strategy} accounts={len(domain.accounts)} active={domain.active_identity_key}")
    for index, account in enumerate(domain.accounts):
        reason = ineligibility_reason(account, now=now) or "ready"
        print(
            f"[{index}] {format_account_label(account, index)} identity_key={account.identity_key} "
            f"state={reason} expires={format_epoch_ms(account.expires)} has_refresh={bool(account.refresh)}"
        )
    return 0


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    mode: AuthMode = args.mode

    if args.command in {"refresh", "sync-quota"}:
        async with rotator_context(settings) as context:
            if args.command == "refresh":
                result = await context.refresher.tick((mode,))
                print(f"refreshed={len(result.refreshed)} failed={len(result.failed)} disabled={len(result.disabled)}")
                return 1 if result.failed or result.disabled else 0
            if context.http is None:
                raise RuntimeError("sync-quota needs an HTTP client")
            applied = await context.service.apply_quota_cooldowns(mode, context.http.retry_client)
            print(f"cooled_down={len(applied)}")
            return 0

    context = build_context(settings)
    if args.command == "status":
        return await _status(context, mode)

    if args.command in {"enable", "disable"}:
        found = await context.repository.set_enabled(mode, args.identity_key, args.command == "enable")
        print(f"{args.command}d={int(found)}")
        return 0 if found else 1

    if args.command == "remove":
        removed = await context.repository.remove(mode, args.identity_key)
        print(f"removed={int(removed)}")
        return 0 if removed else 1

    if args.command == "strategy":
        value = normalize_strategy(args.strategy)
        await context.repository.set_strategy(mode, value)
        print(f"strategy={value or 'default'}")
        return 0

    if args.command == "prune-affinity":
        state = context.affinity[mode]
        removed = await state.load()
        removed += await state.prune()
        await state.persist()
        print(f"pruned={removed} remaining={len(state.seen_session_keys)}")
        return 0

    raise SystemExit(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    _configure_logging(settings, args.verbose)

    async def _main() -> int:
        return await _run(args, settings)

    try:
        code = anyio.run(_main)
    except StorageError as exc:
        logger.error("Accounts storage unavailable error=%s", exc)
        raise SystemExit(2) from exc
    raise SystemExit(code)


if __name__ == "__main__":
    main()
