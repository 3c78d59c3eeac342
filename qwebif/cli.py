from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from qwebif.core import Config, config_path, config_to_toml, load_config, save_config
from qwebif.restore import RestoreAction, invoke
from qwebif.system import system_reboot


RESTORE_CHOICES = {
    "keep-ip": RestoreAction.KEEP_IDENTITY,
    "full": RestoreAction.FULL,
}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="qwebif")
    parser.add_argument(
        "--config",
        type=Path,
        default=config_path(),
        help="Path to the TOML config file.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging verbosity.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize a default config.")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing config.")

    subparsers.add_parser("show", help="Show the effective config.")

    restore_parser = subparsers.add_parser("restore", help="Restore configuration files to factory defaults.")
    restore_parser.add_argument("mode", choices=sorted(RESTORE_CHOICES), help="Keep IP settings or reset everything.")
    restore_parser.add_argument("--yes", action="store_true", help="Confirm the restore.")
    restore_parser.add_argument("--reboot", action="store_true", help="Reboot after a successful restore.")

    web_parser = subparsers.add_parser("web", help="Serve the web interface.")
    web_parser.add_argument("--host", default=None, help="Bind address (defaults to config).")
    web_parser.add_argument("--port", type=int, default=None, help="Bind port (defaults to config).")

    return parser.parse_args(argv)


def _cmd_init(path: Path, force: bool) -> int:
    if path.exists() and not force:
        print(f"Config already exists at {path}. Use --force to overwrite.")
        return 1
    save_config(Config(), path)
    print(f"Initialized config at {path}.")
    return 0


def _cmd_show(path: Path) -> int:
    config = load_config(path)
    print(config_to_toml(config).rstrip())
    return 0


def _print_result(result) -> int:
    if result.stdout.strip():
        print(result.stdout.rstrip())
    return result.returncode


def _cmd_restore(path: Path, mode: str, confirmed: bool, reboot: bool) -> int:
    if not confirmed:
        print("Restore is irreversible. Re-run with --yes to confirm.")
        return 1
    config = load_config(path)
    result = invoke(RESTORE_CHOICES[mode], config.restore)
    if result.output:
        print(result.output)
    if not result.ok:
        print(f"Restore failed with exit status {result.returncode}.")
        return result.returncode
    print("Configuration restored.")
    if reboot:
        return _print_result(system_reboot(config.device))
    return 0


def _cmd_web(path: Path, host: str | None, port: int | None, log_level: str) -> int:
    import uvicorn

    from qwebif.web import create_app

    config = load_config(path)
    uvicorn.run(
        create_app(config),
        host=host or config.web.host,
        port=port or config.web.port,
        log_level=log_level.lower(),
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if os.getenv("QWEBIF_ALLOW_NON_ROOT") != "1" and os.geteuid() != 0 and args.command == "restore":
        print("qwebif must be run as root. Try: sudo qwebif")
        return 1
    path = args.config

    if args.command == "init":
        return _cmd_init(path, args.force)
    if args.command == "show":
        return _cmd_show(path)
    if args.command == "restore":
        return _cmd_restore(path, args.mode, args.yes, args.reboot)
    if args.command == "web":
        return _cmd_web(path, args.host, args.port, args.log_level)

    raise SystemExit("Unknown command")


if __name__ == "__main__":
    raise SystemExit(main())
