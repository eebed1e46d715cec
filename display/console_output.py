"""Console output module for colored messages.

Messages go through a Rich console. Plain mode (``--plain``, or
``BLOOMBOARD_PLAIN_OUTPUT=true``) skips Rich markup and writes colorama
colored lines instead, which keeps output readable when piped or on old
Windows consoles.
"""

import os
import sys
from typing import Optional

from colorama import Fore, Style, just_fix_windows_console
from rich.console import Console

just_fix_windows_console()

_PLAIN_OUTPUT = os.environ.get("BLOOMBOARD_PLAIN_OUTPUT", "").lower() in ("true", "1", "yes", "on")

console = Console(highlight=False)


def _safe_emoji(emoji: str) -> str:
    """Return emoji if the console can encode it, otherwise an ASCII stand-in."""
    try:
        emoji.encode(sys.stdout.encoding or 'utf-8')
        return emoji
    except (UnicodeEncodeError, LookupError):
        emoji_map = {
            "✅": "OK",
            "❌": "X",
            "⚠️": "!",
            "ℹ️": "i",
            "📊": "[S]",
            "💰": "$",
            "🔷": "*",
        }
        return emoji_map.get(emoji, "*")


def set_plain_output(plain: bool = True) -> None:
    """Switch between Rich and plain colored output."""
    global _PLAIN_OUTPUT, console
    _PLAIN_OUTPUT = plain
    # Tables still render through Rich, just without color
    console = Console(highlight=False, no_color=plain)


def has_rich_support() -> bool:
    return not _PLAIN_OUTPUT


def get_console() -> Console:
    return console


def _emit(message: str, emoji: str, rich_style: str, color: str, label: str) -> None:
    safe_emoji = _safe_emoji(emoji)
    if _PLAIN_OUTPUT:
        print(f"{color}{safe_emoji} {message}{Style.RESET_ALL}")
        return
    try:
        console.print(f"{safe_emoji} {message}", style=rich_style, markup=False)
    except UnicodeEncodeError:
        print(f"{label}: {message}")


def print_success(message: str, emoji: str = "✅") -> None:
    """Print a success message in green.

    Args:
        message: The success message to display
        emoji: The emoji to display with the message
    """
    _emit(message, emoji, "bold green", Fore.GREEN, "SUCCESS")


def print_error(message: str, emoji: str = "❌") -> None:
    """Print an error message in red."""
    _emit(message, emoji, "bold red", Fore.RED, "ERROR")


def print_warning(message: str, emoji: str = "⚠️") -> None:
    """Print a warning message in yellow."""
    _emit(message, emoji, "bold yellow", Fore.YELLOW, "WARNING")


def print_info(message: str, emoji: str = "ℹ️") -> None:
    """Print an info message in blue."""
    _emit(message, emoji, "bold blue", Fore.BLUE, "INFO")


def print_header(title: str, emoji: str = "🔷", width: Optional[int] = None) -> None:
    """Print a section header.

    Args:
        title: Header text
        emoji: Emoji shown before the title
        width: Rule width for plain output (defaults to 60)
    """
    safe_emoji = _safe_emoji(emoji)
    if _PLAIN_OUTPUT:
        line = "=" * (width or 60)
        print(f"\n{Fore.CYAN}{line}\n{safe_emoji} {title}\n{line}{Style.RESET_ALL}")
        return
    console.rule(f"{safe_emoji} {title}", style="bold cyan")
