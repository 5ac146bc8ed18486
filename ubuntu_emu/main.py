import argparse
import sys
from pathlib import Path

from loguru import logger

from ubuntu_emu.__version__ import __version__
from ubuntu_emu.config.settings import DEVICES, ProvisionConfig
from ubuntu_emu.logging import setup_logging
from ubuntu_emu.services.workflow import ProvisioningWorkflow
from ubuntu_emu.storage.exceptions import EmulatorError


def build_parser():
    parser = argparse.ArgumentParser(
        prog="ubuntu-emu",
        description="Create Ubuntu Touch emulator instances",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw tool output")
    parser.add_argument("--config", default=None, help="Path to a JSON settings file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser(
        "create",
        help="Create a new emulator instance",
        description="Create a new emulator instance named NAME (requires root)",
    )
    create.add_argument("name", help="Name of the instance")
    create.add_argument("--channel", default=None, help="Select device channel")
    create.add_argument("--server", default=None, help="Select image server")
    create.add_argument(
        "--revision",
        type=int,
        default=None,
        help="Select revision; zero or negative values are relative to the latest",
    )
    create.add_argument(
        "--use-raw-disk",
        dest="raw_disk",
        action="store_true",
        default=None,
        help="Keep raw disk images instead of converting to qcow2",
    )
    create.add_argument(
        "--with-sdcard",
        dest="with_sdcard",
        action="store_true",
        default=None,
        help="Create an additional vfat sdcard image",
    )
    create.add_argument("--arch", default=None, choices=sorted(DEVICES), help="Device architecture")
    create.add_argument("--password", default=None, help="Password for the default user")
    create.add_argument("--locale", default=None, help="Default locale for the wizard, e.g. en_US.utf8")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)

    try:
        config = ProvisionConfig.load(
            Path(args.config) if args.config else None,
            channel=args.channel,
            server=args.server,
            revision=args.revision,
            arch=args.arch,
            raw_disk=args.raw_disk,
            with_sdcard=args.with_sdcard,
            password=args.password,
            locale=args.locale,
        )
        ProvisioningWorkflow(config).create(args.name)
    except EmulatorError as error:
        logger.error(str(error))
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
