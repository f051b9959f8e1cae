#!/usr/bin/env python
"""
The main module provides the executable entrypoint for cdplane
"""

# Standard
from typing import Dict, Tuple
import argparse

# First Party
import aconfig
import alog

# Local
from . import config
from .cmd import CmdBase, RunOperatorCmd
from .config import library_config
from .log_format import CdplaneJsonFormatter

## Constants ###################################################################

log = alog.use_channel("MAIN")

## Helpers #####################################################################


def add_library_config_args(parser, config_obj=None, path=None):
    """Automatically add args for all elements of the library config"""
    path = path or []
    setters = {}
    config_obj = config_obj if config_obj is not None else library_config
    for key, val in config_obj.items():
        sub_path = path + [key]

        # If this is a nested arg, recurse
        if isinstance(val, aconfig.AttributeAccessDict):
            setters.update(
                add_library_config_args(parser, config_obj=val, path=sub_path)
            )
            continue

        arg_name = ".".join(sub_path)
        dest_name = "_".join(sub_path)
        kwargs = {
            "default": val,
            "dest": dest_name,
            "help": f"Library config override for {arg_name} (see cdplane.config)",
        }
        if isinstance(val, list):
            kwargs["nargs"] = "*"
        elif isinstance(val, bool):
            kwargs["action"] = "store_true"
        elif val is not None:
            kwargs["type"] = type(val)

        if (
            f"--{arg_name}"
            not in parser._option_string_actions  # pylint: disable=protected-access
        ):
            parser.add_argument(f"--{arg_name}", **kwargs)
            setters[dest_name] = sub_path
    return setters


def update_library_config(args, setters):
    """Update the library config values based on the parsed arguments"""
    for dest_name, config_path in setters.items():
        config_obj = library_config
        while len(config_path) > 1:
            config_obj = config_obj[config_path[0]]
            config_path = config_path[1:]
        config_obj[config_path[0]] = getattr(args, dest_name)


def add_command(
    subparsers: argparse._SubParsersAction,
    cmd: CmdBase,
) -> Tuple[argparse.ArgumentParser, Dict[str, list]]:
    """Add the subparser and set up the default fun call"""
    parser = cmd.add_subparser(subparsers)
    parser.set_defaults(func=cmd.cmd)
    library_args = parser.add_argument_group("Library Configuration")
    library_config_setters = add_library_config_args(library_args)
    return parser, library_config_setters


## Main ########################################################################


def main():
    """The main module provides the executable entrypoint for cdplane"""
    parser = argparse.ArgumentParser(description=__doc__)

    # Add the subcommands
    subparsers = parser.add_subparsers(help="Available commands", dest="command")
    run_operator_parser, library_config_setters = add_command(
        subparsers, RunOperatorCmd()
    )

    # Use a preliminary parser to check for the presence of a command and fall
    # back to the default command if not found
    check_parser = argparse.ArgumentParser(add_help=False)
    check_parser.add_argument("command", nargs="?")
    check_args, _ = check_parser.parse_known_args()
    if check_args.command not in subparsers.choices:
        args = run_operator_parser.parse_args()
    else:
        args = parser.parse_args()

    # Provide overrides to the library configs
    update_library_config(args, library_config_setters)

    # Reconfigure logging
    alog.configure(
        default_level=config.log_level,
        filters=config.log_filters,
        formatter=CdplaneJsonFormatter() if config.log_json else "pretty",
        thread_id=config.log_thread_id,
    )

    # Run the command's function
    args.func(args)


if __name__ == "__main__":  # pragma: no cover
    main()
