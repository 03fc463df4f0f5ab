"""Command parser for CLI input."""

import shlex

from cli.models import (
    CommandRequest,
    ConfigCommand,
    ReceiveCommand,
    SendCommand,
    StatusCommand,
)


class ParseError(Exception):
    """Raised when command parsing fails."""

    pass


def parse_command(input_line: str) -> CommandRequest:
    """Parse user input into a CommandRequest object.

    Args:
        input_line: Raw user input from REPL

    Returns:
        CommandRequest object (one of Send/Receive/Status/Config)

    Raises:
        ParseError: If command syntax is invalid
    """
    if not input_line.strip():
        raise ParseError("Empty command")

    try:
        tokens = shlex.split(input_line)
    except ValueError as e:
        raise ParseError(f"Invalid syntax: {e}")

    return parse_tokens(tokens)


def parse_tokens(tokens: list[str]) -> CommandRequest:
    """Parse already split arguments (REPL line or argv)."""
    if not tokens:
        raise ParseError("Empty command")

    command_name = tokens[0]

    if command_name == "send":
        return _parse_send(tokens[1:])
    elif command_name == "receive":
        return _parse_receive(tokens[1:])
    elif command_name == "status":
        return _parse_status(tokens[1:])
    elif command_name == "config":
        return _parse_config(tokens[1:])
    else:
        raise ParseError(f"Unknown command: {command_name}")


def _parse_send(args: list[str]) -> SendCommand:
    """Parse 'send <path> [code]' command."""
    if not 1 <= len(args) <= 2:
        raise ParseError("send requires 1 or 2 arguments: <path> [code]")

    access_code = args[1] if len(args) > 1 else None
    return SendCommand(file_path=args[0], access_code=access_code)


def _parse_receive(args: list[str]) -> ReceiveCommand:
    """Parse 'receive <code> [output_dir]' command."""
    if not 1 <= len(args) <= 2:
        raise ParseError("receive requires 1 or 2 arguments: <code> [output_dir]")

    output_dir = args[1] if len(args) > 1 else None
    return ReceiveCommand(access_code=args[0], output_dir=output_dir)


def _parse_status(args: list[str]) -> StatusCommand:
    """Parse 'status <code>' command."""
    if len(args) != 1:
        raise ParseError("status requires exactly 1 argument: <code>")

    return StatusCommand(access_code=args[0])


def _parse_config(args: list[str]) -> ConfigCommand:
    """Parse 'config [key value]' command."""
    if not args:
        return ConfigCommand()
    if len(args) != 2:
        raise ParseError("config takes no arguments or exactly 2: <key> <value>")

    key, value = args
    return ConfigCommand(key=key, value=value)
