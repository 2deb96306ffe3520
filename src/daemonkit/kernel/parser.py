from __future__ import annotations

from typing import List, Optional, Sequence, Tuple, Union

from ..contracts.v1 import Command, OptionMap
from ..errors import CommandIdError, EmptyCommandNameError, InvalidArgumentCountError, InvalidArgumentVectorError


# (name, value); an empty name marks the end of options.
_OptionToken = Tuple[str, Optional[str]]

END_OF_OPTIONS = "--"


def split_option(arg: str) -> Optional[_OptionToken]:
    """Classify one argument.

    Returns None for a non-option, ("", None) for the end-of-options marker
    (`--`, or `--=...` which has no option name), otherwise (name, value) where
    value is None when no `=` was given.
    """
    if not arg.startswith(END_OF_OPTIONS):
        return None
    body = arg[len(END_OF_OPTIONS):]
    name, sep, value = body.partition("=")
    if not name:
        return "", None
    return name, (value if sep else None)


def parse_commands(argv: Optional[Sequence[str]], *, one_command: bool = False) -> List[Command]:
    """Parse an argument vector into commands.

    one command mode:   command [--option[=[value]]] [--] [parameter ...]
    multicommand mode:  command [--option[=[value]]] [-- [parameter ...]] ...

    In multicommand mode the end-of-options marker also ends the list of
    commands: everything after it belongs to the current command. Short
    options (`-o`) are not recognized and are treated as names/parameters.
    """
    if argv is None:
        raise InvalidArgumentVectorError()
    argc = len(argv)
    if argc <= 0:
        raise InvalidArgumentCountError()

    result: List[Command] = []
    argi = 0
    while argi < argc:
        name = argv[argi]
        if name is None:
            raise InvalidArgumentVectorError(argi)
        if not name:
            raise EmptyCommandNameError(argi)
        argi += 1

        options: OptionMap = {}
        parameters: List[str] = []

        end_of_options = False
        while argi < argc:
            arg = argv[argi]
            if arg is None:
                raise InvalidArgumentVectorError(argi)
            opt = split_option(arg)
            if opt is None:
                # A command (or a parameter) begins here.
                break
            argi += 1
            if not opt[0]:
                end_of_options = True
                break
            options[opt[0]] = opt[1]

        if end_of_options or one_command:
            while argi < argc:
                arg = argv[argi]
                if arg is None:
                    raise InvalidArgumentVectorError(argi)
                parameters.append(arg)
                argi += 1

        result.append(Command(name, options, parameters))
    return result


def parse_command(argv: Optional[Sequence[str]]) -> Command:
    return parse_commands(argv, one_command=True)[0]


def command_id(
    items: Union[Sequence[Command], Sequence[str]],
    offset: Optional[int] = None,
    delim: str = ".",
) -> str:
    """Join command names (or plain parameters) starting at `offset`.

    For commands the default offset is 1 so the program itself is skipped:
    `prog service start` gives "service.start".
    """
    names = [c.name if isinstance(c, Command) else str(c) for c in items]
    if offset is None:
        offset = 1 if items and isinstance(items[0], Command) else 0
    if not 0 <= offset < len(names):
        raise CommandIdError("cannot generate command ID: offset is out of range")
    return delim.join(names[offset:])
