# main.py - CLI entry point (systemd-friendly: exits with a meaningful code)
from __future__ import annotations
import argparse
import logging
import os
import signal
import sys

from .config import load_config, require_credentials
from .controller import CycleController
from .errors import ConfigurationError, TransientGatewayError, UnsafeResidualPositionError
from .exchange import CcxtGateway
from .notifications.discord_notifier import DiscordNotifier
from .timing import Pauser, Randomizer
from .utils import load_env_file_if_present, setup_logging, LOG_FORMAT, LOG_DATEFMT

log = logging.getLogger("main")

EXIT_OK = 0
EXIT_GATEWAY = 1
EXIT_CONFIG = 2
EXIT_UNSAFE_RESIDUAL = 3


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="perp-cycler", description="Randomized perp position cycling")
    p.add_argument("--config", default=os.environ.get("PERP_CYCLER_CONFIG", "config/config.yaml"), help="Path to YAML config")
    p.add_argument("--mode", choices=["run", "check"], default="run",
                   help="run: cycle positions; check: report residual positions and exit")
    p.add_argument("--dry", action="store_true", help="Log orders instead of sending them")
    p.add_argument("--seed", type=int, default=None, help="Seed for the random draws")
    p.add_argument("--env-file", default=None, help="Optional .env file with credentials")
    return p.parse_args(argv)


def install_signal_handlers(pauser: Pauser) -> None:
    def _handle_stop(signum, _frame):
        log.warning(f"Signal {signal.Signals(signum).name} received; stopping")
        pauser.request_stop()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    load_env_file_if_present(args.env_file)

    try:
        cfg = load_config(args.config)
        if not args.dry and args.mode == "run":
            require_credentials(cfg)
    except ConfigurationError as e:
        log.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    setup_logging(cfg.logging.level, cfg.paths.logs_dir, cfg.logging.file_backups)
    log.info(f"Starting {args.mode} (dry={args.dry}) using config={args.config}")

    randomizer = Randomizer(args.seed)
    pauser = Pauser(randomizer)
    install_signal_handlers(pauser)
    notifier = DiscordNotifier.from_config(cfg.notifications.discord, stop_event=pauser.stop_event)

    try:
        gateway = CcxtGateway(cfg, dry=args.dry)
    except ConfigurationError as e:
        log.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    controller = CycleController(cfg, gateway, randomizer=randomizer, pauser=pauser, notifier=notifier)
    try:
        if args.mode == "check":
            residuals = controller.check()
            for product_id, residual in residuals.items():
                state = "FLAT" if residual == 0 else f"RESIDUAL {residual:+}"
                print(f"{product_id:<24} {state}")
            return EXIT_OK if all(r == 0 for r in residuals.values()) else EXIT_UNSAFE_RESIDUAL
        return controller.run()
    except TransientGatewayError as e:
        log.error(f"Gateway error: {e}")
        return EXIT_GATEWAY
    except ConfigurationError as e:
        log.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except UnsafeResidualPositionError as e:
        log.critical(str(e))
        return EXIT_UNSAFE_RESIDUAL
    finally:
        gateway.close()


if __name__ == "__main__":
    sys.exit(main())
