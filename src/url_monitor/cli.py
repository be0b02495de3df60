"""
Command-line interface for the URL monitor.

This module provides the main CLI entry point with commands for:
- sync: Fetch and diff the remote list once
- check: Run one check cycle and deliver the results
- run: Start both jobs and keep running until interrupted
- status: Show configuration, job state, statistics and queues
- replay: Retry archived failed deliveries
- configure: Apply option changes and persist them
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import dotenv_values

from . import __version__
from .audit_logger import AuditLogger
from .config import MonitorConfig
from .exceptions import ConfigError, MonitorError
from .service import MonitorService
from .store import JsonFileStore, MemoryStore, StateStore

ENV_PREFIX = "URL_MONITOR_"

# Environment variable suffix -> (configure() option, parser)
ENV_OPTIONS = {
    "REMOTE_ENDPOINT": ("remoteEndpoint", str),
    "CALLBACK_ENDPOINT": ("callbackEndpoint", str),
    "CALLBACK_NAME": ("callbackName", str),
    "CHECK_INTERVAL_MS": ("checkIntervalMs", int),
    "SYNC_INTERVAL_MS": ("syncIntervalMs", int),
    "MAX_RETRIES": ("maxRetries", int),
    "RETRY_DELAY_MS": ("retryDelayMs", int),
    "TIMEOUT_MS": ("timeoutMs", int),
    "STRICT_VALIDATION": ("strictValidation", "bool"),
    "STRICT_DELIVERY_STATUS": ("strictDeliveryStatus", "bool"),
    "BATCH_SIZE": ("batchSize", int),
}


def load_config_from_file(config_path: Path) -> Optional[MonitorConfig]:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        MonitorConfig if the file exists, None otherwise

    Raises:
        ConfigError: If the file is not valid JSON or has invalid values
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(
            code="invalid_config",
            message=f"Could not read config from {config_path}: {e}",
        ) from e

    if not isinstance(data, dict):
        raise ConfigError(
            code="invalid_config",
            message=f"Config file {config_path} does not contain an object",
        )
    return MonitorConfig.from_dict(data)


def save_config_to_file(config: MonitorConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Args:
        config: MonitorConfig to save
        config_path: Path to save the configuration

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)
        return True
    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def read_environment(
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """
    Collect ``URL_MONITOR_*`` variables.

    Values from the process environment take precedence over the env file.
    """
    values: dict[str, str] = {}
    if env_file is not None:
        for key, value in dotenv_values(env_file).items():
            if value is not None and key.startswith(ENV_PREFIX):
                values[key] = value
    source = os.environ if environ is None else environ
    for key, value in source.items():
        if key.startswith(ENV_PREFIX):
            values[key] = value
    return values


def options_from_environment(env: Mapping[str, str]) -> dict[str, Any]:
    """
    Translate environment variables into ``configure()`` options.

    Raises:
        ConfigError: If a numeric or boolean variable cannot be parsed
    """
    options: dict[str, Any] = {}
    for suffix, (option, parser) in ENV_OPTIONS.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None or raw.strip() == "":
            continue
        raw = raw.strip()
        try:
            if parser == "bool":
                if raw.lower() not in ("1", "0", "true", "false", "yes", "no"):
                    raise ValueError(raw)
                options[option] = raw.lower() in ("1", "true", "yes")
            else:
                options[option] = parser(raw)
        except ValueError as e:
            raise ConfigError(
                code="invalid_option",
                message=f"Invalid value for {ENV_PREFIX + suffix}: {raw!r}",
                details={"variable": ENV_PREFIX + suffix},
            ) from e
    return options


def apply_environment(config: MonitorConfig, env: Mapping[str, str]) -> MonitorConfig:
    """Apply environment options plus state file, secret and logging settings."""
    config.apply_options(options_from_environment(env))

    state_file = env.get(ENV_PREFIX + "STATE_FILE")
    if state_file:
        config.persistence.state_file_path = Path(state_file)
    secret = env.get(ENV_PREFIX + "HMAC_SECRET")
    if secret:
        config.persistence.hmac_secret = secret
    level = env.get(ENV_PREFIX + "LOG_LEVEL")
    if level:
        config.logging.level = level.lower()
    log_format = env.get(ENV_PREFIX + "LOG_FORMAT")
    if log_format:
        config.logging.output_format = log_format.lower()
    return config


def load_config_from_env(
    env_file: Optional[Path] = None,
    base: Optional[MonitorConfig] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MonitorConfig:
    """
    Build a configuration from ``URL_MONITOR_*`` variables.

    Args:
        env_file: Optional .env file read with python-dotenv
        base: Configuration to update (defaults to a fresh one)
        environ: Environment mapping (defaults to os.environ)
    """
    return apply_environment(base or MonitorConfig(), read_environment(env_file, environ))


def create_store(config: MonitorConfig) -> StateStore:
    """
    Create the state store described by the persistence configuration.

    Raises:
        ConfigError: If a state file is configured without an HMAC secret
    """
    persistence = config.persistence
    if persistence.state_file_path is None:
        backend = MemoryStore()
    else:
        if not persistence.hmac_secret:
            raise ConfigError(
                code="missing_secret",
                message=f"Set {ENV_PREFIX}HMAC_SECRET to use a state file",
            )
        backend = JsonFileStore(persistence.state_file_path, persistence.hmac_secret)
    return StateStore(
        backend,
        history_limit=persistence.history_limit,
        failed_delivery_limit=persistence.failed_delivery_limit,
    )


def build_service(args: argparse.Namespace) -> MonitorService:
    """
    Assemble a service from the config file, environment and CLI flags.

    Without ``--config`` the configuration saved in the state file is used
    as the base, with the environment applied on top.
    """
    file_config = None
    if args.config:
        file_config = load_config_from_file(Path(args.config))
        if file_config is None:
            raise ConfigError(
                code="missing_config",
                message=f"Could not load config from {args.config}",
            )

    env = read_environment(Path(args.env_file) if args.env_file else None)
    config = apply_environment(file_config or MonitorConfig(), env)
    if args.state_file:
        config.persistence.state_file_path = Path(args.state_file)
    if args.log_format:
        config.logging.output_format = args.log_format

    store = create_store(config)

    if file_config is None:
        saved = store.load_config()
        if saved:
            stored = MonitorConfig.from_dict(saved)
            stored.persistence = config.persistence
            stored.logging = config.logging
            stored.apply_options(options_from_environment(env))
            config = stored

    logger = AuditLogger.from_config(config.logging)
    return MonitorService(config=config, store=store, logger=logger)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _sync(args: argparse.Namespace) -> int:
    async with build_service(args) as service:
        result = await service.run_sync_now()
        entry = result.to_history_entry()
        if result.change_set is not None and args.verbose:
            entry["changes"] = result.change_set.to_dict()
        _print_json(entry)
        return 0 if result.success else 1


async def _check(args: argparse.Namespace) -> int:
    async with build_service(args) as service:
        report = await service.run_check_now()
        if report is None:
            print("No item list available; nothing was checked.", file=sys.stderr)
            return 1

        output = {
            "batch_id": report.batch.batch_id,
            "summary": report.batch.summary.to_dict(),
        }
        if args.verbose:
            output["urls"] = [r.to_payload_entry() for r in report.batch.results]
        if report.delivery is not None:
            output["delivery"] = {
                "delivered": report.delivery.delivered,
                "attempts": report.delivery.attempt.attempts_made,
                "status_code": report.delivery.status_code,
                "error": report.delivery.error,
            }
        _print_json(output)
        return 0 if report.delivery is None or report.delivery.delivered else 1


async def _run(args: argparse.Namespace) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported by every event loop (e.g. Windows)
            pass

    async with build_service(args) as service:
        await service.start()
        await stop_event.wait()
        service.stop()
    return 0


async def _replay(args: argparse.Namespace) -> int:
    async with build_service(args) as service:
        outcomes = await service.replay_failed_deliveries()
        _print_json([
            {
                "batch_id": outcome.attempt.attempt_id,
                "delivered": outcome.delivered,
                "attempts": outcome.attempt.attempts_made,
                "error": outcome.error,
            }
            for outcome in outcomes
        ])
        return 0 if all(outcome.delivered for outcome in outcomes) else 1


async def _status(args: argparse.Namespace) -> int:
    async with build_service(args) as service:
        _print_json(service.status())
        return 0


def parse_assignment(assignment: str) -> tuple[str, Any]:
    """
    Parse ``key=value``; the value is read as JSON when possible.

    Raises:
        ConfigError: If there is no '='
    """
    key, sep, raw = assignment.partition("=")
    if not sep or not key:
        raise ConfigError(
            code="invalid_option",
            message=f"Expected key=value, got {assignment!r}",
        )
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return key.strip(), value


async def _configure(args: argparse.Namespace) -> int:
    options = dict(parse_assignment(item) for item in args.set or [])
    async with build_service(args) as service:
        config = service.configure(options)
        if args.config and not save_config_to_file(config, Path(args.config)):
            return 1
        _print_json(config.to_dict())
        return 0


def cmd_sync(args: argparse.Namespace) -> int:
    """Handle the 'sync' command."""
    return asyncio.run(_sync(args))


def cmd_check(args: argparse.Namespace) -> int:
    """Handle the 'check' command."""
    return asyncio.run(_check(args))


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command."""
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Handle the 'status' command."""
    return asyncio.run(_status(args))


def cmd_replay(args: argparse.Namespace) -> int:
    """Handle the 'replay' command."""
    return asyncio.run(_replay(args))


def cmd_configure(args: argparse.Namespace) -> int:
    """Handle the 'configure' command."""
    return asyncio.run(_configure(args))


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="url-monitor",
        description="Monitor URL liveness against a remote list and deliver results to a webhook",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to a JSON configuration file",
    )
    parser.add_argument(
        "--env-file",
        help="Path to a .env file with URL_MONITOR_* variables",
    )
    parser.add_argument(
        "--state-file",
        help="Path to the HMAC-protected state file",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text", "both"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser("sync", help="Fetch and diff the remote list once")
    sync_parser.add_argument("--verbose", "-v", action="store_true", help="Print the change set")
    sync_parser.set_defaults(func=cmd_sync)

    check_parser = subparsers.add_parser("check", help="Run one check cycle")
    check_parser.add_argument("--verbose", "-v", action="store_true", help="Print every URL result")
    check_parser.set_defaults(func=cmd_check)

    run_parser = subparsers.add_parser("run", help="Run the sync and check jobs until interrupted")
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser("status", help="Show state and statistics")
    status_parser.set_defaults(func=cmd_status)

    replay_parser = subparsers.add_parser("replay", help="Retry archived failed deliveries")
    replay_parser.set_defaults(func=cmd_replay)

    configure_parser = subparsers.add_parser("configure", help="Apply and persist options")
    configure_parser.add_argument(
        "--set",
        action="append",
        metavar="KEY=VALUE",
        help="Option to set, e.g. checkIntervalMs=60000 (repeatable)",
    )
    configure_parser.set_defaults(func=cmd_configure)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except MonitorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
