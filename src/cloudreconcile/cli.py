"""Developer CLI for inspecting identities, tokens and backoff schedules."""

from __future__ import annotations

import argparse
import logging as py_logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from .config import load_config
from .errors import ExitCode, ReconcileError, user_facing_error
from .identity import ResourceIdentity, build_client_token, decode_id, encode_id
from .logging import LOG_LEVELS, configure_logging, normalize_level

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
_MAX_ATTEMPTS = 64


def _log_level_type(value: str) -> str:
    normalized = normalize_level(value)
    if normalized not in LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _positive_int(flag: str, upper: int | None = None) -> Callable[[str], int]:
    def parse(value: str) -> int:
        try:
            number = int(value)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"{flag} must be an integer") from exc
        if number < 1 or (upper is not None and number > upper):
            bound = f"between 1 and {upper}" if upper is not None else "at least 1"
            raise argparse.ArgumentTypeError(f"{flag} must be {bound}")
        return number

    return parse


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cloudreconcile")
    parser.add_argument("--log-level", type=_log_level_type, default="INFO")
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("--config", type=Path, default=None, help="Engine config TOML path")
    commands = parser.add_subparsers(dest="command", required=True)

    identity = commands.add_parser("id", help="Encode or decode composite resource identities")
    identity_commands = identity.add_subparsers(dest="id_command", required=True)
    encode = identity_commands.add_parser("encode")
    encode.add_argument("components", nargs="+")
    decode = identity_commands.add_parser("decode")
    decode.add_argument("identity")
    decode.add_argument("--count", type=_positive_int("--count"), required=True)

    backoff = commands.add_parser("backoff", help="Print the configured retry delay schedule")
    backoff.add_argument("--attempts", type=_positive_int("--attempts", _MAX_ATTEMPTS), default=6)
    backoff.add_argument("--jitter", action="store_true", help="Sample jittered delays")

    token = commands.add_parser("token", help="Print an idempotency token for a mutating call")
    token.add_argument("action")
    token.add_argument("components", nargs="*")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def _run_identity(namespace: argparse.Namespace) -> int:
    if namespace.id_command == "encode":
        print(encode_id(namespace.components))
    else:
        for component in decode_id(namespace.identity, namespace.count):
            print(component)
    return int(ExitCode.SUCCESS)


def _run_backoff(namespace: argparse.Namespace) -> int:
    policy = load_config(namespace.config).to_policy()
    for attempt in range(namespace.attempts):
        delay = policy.delay(attempt) if namespace.jitter else policy.raw_delay(attempt)
        print(f"attempt {attempt}: {delay:.2f}s")
    return int(ExitCode.SUCCESS)


def _run_token(namespace: argparse.Namespace) -> int:
    identity = ResourceIdentity(tuple(namespace.components)) if namespace.components else None
    print(build_client_token(namespace.action, identity))
    return int(ExitCode.SUCCESS)


def run_cli_flow(namespace: argparse.Namespace) -> int:
    handlers = {
        "id": _run_identity,
        "backoff": _run_backoff,
        "token": _run_token,
    }
    return handlers[namespace.command](namespace)


def main(argv: Sequence[str] | None = None) -> int:
    logger = configure_logging()
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    logger = configure_logging(level=namespace.log_level, log_file=namespace.log_file)
    try:
        logger.debug("Running command %s", namespace.command)
        return run_cli_flow(namespace)
    except ReconcileError as exc:
        logger.error(
            "Handled ReconcileError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        print(user_facing_error("Unexpected runtime failure"), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
