import argparse
import inspect


class CommandRegistrationError(Exception):
    """Raised when two handlers try to register the same subcommand."""


# subcommand name -> handler, help text and argument specs
_COMMAND_SPECS = {}


def _argument_spec(parameter, argument_help):
    flags = []
    kwargs = {}
    if parameter.default is inspect.Parameter.empty:
        flags.append(parameter.name)
        if parameter.annotation in (int, float):
            kwargs["type"] = parameter.annotation
    else:
        flags.append("--" + parameter.name.replace("_", "-"))
        kwargs["default"] = parameter.default
        if isinstance(parameter.default, bool):
            kwargs["action"] = "store_false" if parameter.default else "store_true"
        elif parameter.default is not None:
            kwargs["type"] = type(parameter.default)
    if parameter.name in argument_help:
        kwargs["help"] = argument_help[parameter.name].strip()
    return {"flags": flags, "kwargs": kwargs, "dest": parameter.name}


def register_command(help_text, description=None, help=None):
    """Register ``func`` as a ``pgsync`` subcommand.

    Positional parameters become positional arguments; parameters with a
    default become ``--options`` (boolean defaults become switches).
    Underscores in the function name turn into dashes.
    """

    def decorator(func):
        name = func.__name__.replace("_", "-")
        if name in _COMMAND_SPECS:
            raise CommandRegistrationError(
                f"Command '{name}' already registered"
            )
        argument_help = help if help is not None else {}
        _COMMAND_SPECS[name] = {
            "handler": func,
            "help": help_text.strip(),
            "description": (
                description if description is not None else help_text
            ).strip(),
            "arguments": [
                _argument_spec(parameter, argument_help)
                for parameter in inspect.signature(func).parameters.values()
                if parameter.kind
                not in (
                    inspect.Parameter.VAR_POSITIONAL,
                    inspect.Parameter.VAR_KEYWORD,
                )
            ],
        }
        return func

    return decorator


def build_parser(prog="pgsync"):
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Incremental page builds with source/canvas sync",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug output"
    )
    subparsers = parser.add_subparsers(dest="command", metavar="command")
    for name in sorted(_COMMAND_SPECS):
        spec = _COMMAND_SPECS[name]
        subparser = subparsers.add_parser(
            name, help=spec["help"], description=spec["description"]
        )
        for argument in spec["arguments"]:
            kwargs = dict(argument["kwargs"])
            if argument["flags"][0].startswith("--"):
                kwargs["dest"] = argument["dest"]
            subparser.add_argument(*argument["flags"], **kwargs)
    return parser


def run_command(name, args):
    spec = _COMMAND_SPECS[name]
    kwargs = {
        argument["dest"]: getattr(args, argument["dest"])
        for argument in spec["arguments"]
    }
    return spec["handler"](**kwargs)
