#!/usr/bin/env python3
"""
Input helpers for the n8n Stack Manager.

Prompts, confirmations and the numbered service chooser.
"""
from __future__ import annotations

from typing import Sequence

from stackmgr.ui import Colors, colorize, error, print_menu


# ─── Input Helpers ────────────────────────────────────────────────────────────

def get_input(prompt: str, default: str = "") -> str:
    """Get user input with optional default value."""
    if default:
        user_input = input(f"{prompt} [{colorize(default, Colors.CYAN)}]: ").strip()
        return user_input if user_input else default
    return input(f"{prompt}: ").strip()


def confirm(prompt: str, default: bool = False) -> bool:
    """Ask for yes/no confirmation."""
    suffix = "[Y/n]" if default else "[y/N]"
    response = input(f"{prompt} {suffix}: ").strip().lower()
    if not response:
        return default
    return response in ("y", "yes")


# ─── Service Selection ────────────────────────────────────────────────────────

def parse_service_choice(text: str, names: Sequence[str]) -> tuple[frozenset[str] | None, str]:
    """Parse a chooser answer into a set of service names.

    Accepts menu numbers or service names separated by commas or spaces,
    and 'a' / 'all' for everything.

    Returns:
        Tuple of (selected names or None, error_message)
    """
    tokens = text.replace(",", " ").split()
    if not tokens:
        return frozenset(), ""
    if len(tokens) == 1 and tokens[0].lower() in ("a", "all"):
        return frozenset(names), ""

    chosen: set[str] = set()
    for token in tokens:
        if token.isdigit():
            index = int(token)
            if not 1 <= index <= len(names):
                return None, f"No option {index} (choose 1-{len(names)})"
            chosen.add(names[index - 1])
        elif token in names:
            chosen.add(token)
        else:
            return None, f"'{token}' is not one of: {', '.join(names)}"
    return frozenset(chosen), ""


def choose_services(
    names: Sequence[str],
    descriptions: dict[str, str],
    action: str,
) -> frozenset[str]:
    """Show a numbered list of services and read the operator's choice.

    An empty answer selects nothing.
    """
    print(f"Select services to {action}:")
    print_menu([(str(i), f"{name:<12} {descriptions.get(name, '')}") for i, name in enumerate(names, 1)])
    while True:
        answer = get_input("Numbers or names (comma separated, 'a' for all, Enter for none)")
        selected, err_msg = parse_service_choice(answer, names)
        if selected is not None:
            return selected
        error(err_msg)
