#!/usr/bin/env python3
"""
UI utilities for the n8n Stack Manager.

Provides terminal colors, output functions, and menu helpers.
"""
from __future__ import annotations

import os
import sys


# ─── Terminal Colors ──────────────────────────────────────────────────────────

class Colors:
    """ANSI color codes for terminal output."""
    BLUE = "\033[1;34m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RED = "\033[1;31m"
    CYAN = "\033[1;36m"
    MAGENTA = "\033[1;35m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    OFF = "\033[0m"


if os.environ.get("NO_COLOR"):
    for _name in [n for n in vars(Colors) if n.isupper()]:
        setattr(Colors, _name, "")


def colorize(text: str, color: str) -> str:
    """Wrap text in ANSI color codes."""
    return f"{color}{text}{Colors.OFF}"


# ─── Output Functions ─────────────────────────────────────────────────────────

def say(msg: str) -> None:
    """Print an info message with blue prefix."""
    print(f"{Colors.BLUE}[*]{Colors.OFF} {msg}")


def ok(msg: str) -> None:
    """Print a success message with green prefix."""
    print(f"{Colors.GREEN}[✓]{Colors.OFF} {msg}")


def warn(msg: str) -> None:
    """Print a warning message with yellow prefix."""
    print(f"{Colors.YELLOW}[!]{Colors.OFF} {msg}")


def error(msg: str) -> None:
    """Print an error message with red prefix."""
    print(f"{Colors.RED}[✗]{Colors.OFF} {msg}", file=sys.stderr)


# ─── Menu Utilities ───────────────────────────────────────────────────────────

def print_header(title: str) -> None:
    """Print a decorative header box in cyan."""
    width = max(60, len(title) + 10)
    print()
    print(colorize("╔" + "═" * (width - 2) + "╗", Colors.CYAN))
    print(colorize(f"║{title.center(width - 2)}║", Colors.CYAN))
    print(colorize("╚" + "═" * (width - 2) + "╝", Colors.CYAN))
    print()


def print_menu(options: list[tuple[str, str]]) -> None:
    """Print a menu with numbered options."""
    for key, description in options:
        print(f"  {colorize(key + ')', Colors.BOLD)} {description}")
    print()
