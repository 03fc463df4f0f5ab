"""Interactive fileflow shell built on prompt_toolkit."""

import os
import sys
from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.history import InMemoryHistory

from cli.commands import (
    handle_config,
    handle_receive,
    handle_send,
    handle_status,
)
from cli.constants import (
    COMMANDS,
    ERROR_PREFIX,
    HELP_TEXT,
    LOGO,
    PROMPT_TEXT,
    STYLE,
    WELCOME_HELP,
    WELCOME_TITLE,
)
from cli.models import (
    ConfigCommand,
    ReceiveCommand,
    SendCommand,
    StatusCommand,
)
from cli.parser import ParseError, parse_command


HANDLERS = {
    SendCommand: handle_send,
    ReceiveCommand: handle_receive,
    StatusCommand: handle_status,
    ConfigCommand: handle_config,
}

EXIT_WORDS = ("exit", "quit")


def clear_screen() -> None:
    """Clear the terminal screen (cross-platform)."""
    os.system("cls" if sys.platform == "win32" else "clear")


def show_welcome() -> None:
    print(LOGO)
    print(WELCOME_TITLE)
    print(WELCOME_HELP)


def dispatch_command(cmd_obj) -> str:
    """Route a parsed command to its handler and return the text to print."""
    handler = HANDLERS.get(type(cmd_obj))
    if handler is None:
        return f"{ERROR_PREFIX} Unknown command type: {type(cmd_obj)}"
    return handler(cmd_obj)


def run_builtin(word: str) -> bool:
    """Handle shell-only words like help and clear. Returns True if consumed."""
    if word == "help":
        print(HELP_TEXT)
        return True
    if word == "clear":
        clear_screen()
        show_welcome()
        return True
    return False


def repl_loop() -> None:
    """Prompt for commands until exit, Ctrl-D or EOF."""
    session: PromptSession = PromptSession(
        completer=WordCompleter(COMMANDS, ignore_case=True),
        history=InMemoryHistory(),
        style=STYLE,
    )

    clear_screen()
    show_welcome()

    while True:
        try:
            line = session.prompt([("class:prompt", PROMPT_TEXT)]).strip()
        except KeyboardInterrupt:
            # Ctrl-C abandons the current line only
            continue
        except EOFError:
            print("\nGoodbye!")
            return

        if not line or run_builtin(line):
            continue
        if line in EXIT_WORDS:
            print("Goodbye!")
            return

        try:
            print(dispatch_command(parse_command(line)))
        except ParseError as e:
            print(f"Error: {e}")
        except KeyboardInterrupt:
            print("Transfer interrupted")
