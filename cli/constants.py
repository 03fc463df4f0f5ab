"""CLI constants and configuration."""

from prompt_toolkit.styles import Style

COMMANDS = ["send", "receive", "status", "config", "clear", "exit", "help"]

STYLE = Style.from_dict(
    {
        "prompt": "#2BA8F4 bold",
        "command": "#0088ff bold",
    }
)

SKY_BLUE = "\033[38;2;43;168;244m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
RED = "\033[31m"
RESET = "\033[0m"

# every failed command result starts with this marker
ERROR_PREFIX = f"{RED}Error:{RESET}"

LOGO = f"""{SKY_BLUE}
 ███████╗██╗██╗     ███████╗███████╗██╗      ██████╗ ██╗    ██╗
 ██╔════╝██║██║     ██╔════╝██╔════╝██║     ██╔═══██╗██║    ██║
 █████╗  ██║██║     █████╗  █████╗  ██║     ██║   ██║██║ █╗ ██║
 ██╔══╝  ██║██║     ██╔══╝  ██╔══╝  ██║     ██║   ██║██║███╗██║
 ██║     ██║███████╗███████╗██║     ███████╗╚██████╔╝╚███╔███╔╝
 ╚═╝     ╚═╝╚══════╝╚══════╝╚═╝     ╚══════╝ ╚═════╝  ╚══╝╚══╝
{RESET}"""

WELCOME_TITLE = "FileFlow CLI - peer-to-peer file transfer with HTTP relay fallback"
WELCOME_HELP = "Type 'help' for commands or 'exit' to quit.\n"

PROMPT_TEXT = "fileflow> "

HELP_TEXT = """Available commands:
  send <path> [code]           Send a file; a new access code is issued when none is given
  receive <code> [output_dir]  Receive the file behind an access code
  status <code>                Show the server-side state of a transfer
  config [key value]           Show settings, or change one
  clear                        Clear screen and redisplay welcome message
  help                         Show this help
  exit                         Exit REPL

A direct peer connection is tried first; if it cannot be established the
file travels through the server in chunks.
Examples:
  send report.pdf
  receive a1b2c3 downloads
  config signaling relay
  config peer_enabled false"""

STATUS_LABELS = {
    "p2p_done": "Direct transfer complete",
    "http": "Using server relay",
}
