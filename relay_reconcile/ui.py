"""Nord-themed console output and logging setup."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

import pyfiglet
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.style import Style
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from relay_reconcile import APP_NAME, APP_SUBTITLE, VERSION

LOGGER_NAME = "relay_reconcile"


# ----------------------------------------------------------------
# Nord-Themed Colors
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette for consistent theming."""

    POLAR_NIGHT_1 = "#2E3440"
    POLAR_NIGHT_4 = "#4C566A"

    SNOW_STORM_1 = "#D8DEE9"
    SNOW_STORM_2 = "#E5E9F0"

    FROST_1 = "#8FBCBB"
    FROST_2 = "#88C0D0"
    FROST_3 = "#81A1C1"
    FROST_4 = "#5E81AC"

    RED = "#BF616A"
    ORANGE = "#D08770"
    YELLOW = "#EBCB8B"
    GREEN = "#A3BE8C"
    PURPLE = "#B48EAD"


console = Console(
    theme=Theme(
        {
            "info": f"bold {NordColors.FROST_2}",
            "warning": f"bold {NordColors.YELLOW}",
            "error": f"bold {NordColors.RED}",
            "success": f"bold {NordColors.GREEN}",
            "section": f"{NordColors.FROST_3} bold",
            "step": f"{NordColors.FROST_2}",
            "path": f"italic {NordColors.FROST_1}",
        }
    )
)

SEVERITY_STYLES = {
    "ok": NordColors.GREEN,
    "info": NordColors.FROST_2,
    "warn": NordColors.YELLOW,
    "error": NordColors.RED,
    "unavailable": NordColors.POLAR_NIGHT_4,
}


# ----------------------------------------------------------------
# Console Helpers
# ----------------------------------------------------------------
def create_header() -> Panel:
    """Render the application banner with pyfiglet inside a Nord panel."""
    ascii_art = ""
    for font in ("slant", "small", "standard"):
        try:
            ascii_art = pyfiglet.Figlet(font=font, width=80).renderText(APP_NAME)
        except pyfiglet.FontNotFound:
            continue
        if ascii_art.strip():
            break
    if not ascii_art.strip():
        ascii_art = APP_NAME

    colors = [NordColors.FROST_1, NordColors.FROST_2, NordColors.FROST_3, NordColors.FROST_2]
    styled = "\n".join(
        f"[bold {colors[i % len(colors)]}]{line}[/]"
        for i, line in enumerate(ascii_art.splitlines())
        if line.strip()
    )
    return Panel(
        Text.from_markup(styled),
        border_style=Style(color=NordColors.FROST_1),
        padding=(1, 2),
        title=f"[bold {NordColors.SNOW_STORM_2}]v{VERSION}[/]",
        title_align="right",
        subtitle=f"[bold {NordColors.SNOW_STORM_1}]{APP_SUBTITLE}[/]",
        subtitle_align="center",
    )


def print_header() -> None:
    console.print(create_header())


def print_message(text: str, style: str = NordColors.FROST_2, prefix: str = "•") -> None:
    # command output such as "nginx: [emerg]" must not be read as markup
    console.print(f"[{style}]{prefix} {escape(text)}[/{style}]")


def print_section(title: str) -> None:
    console.print(f"\n[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * min(len(title) + 4, 60)}[/]")


def print_step(text: str) -> None:
    print_message(text, NordColors.FROST_2, "•")


def print_info(text: str) -> None:
    print_message(text, NordColors.FROST_3, "ℹ")


def print_success(text: str) -> None:
    print_message(text, NordColors.GREEN, "✓")


def print_warning(text: str) -> None:
    print_message(text, NordColors.YELLOW, "⚠")


def print_error(text: str) -> None:
    print_message(text, NordColors.RED, "✗")


def display_panel(message: str, style: str = NordColors.FROST_2, title: Optional[str] = None) -> None:
    """Display a message inside a styled Rich panel."""
    panel = Panel(
        Text.from_markup(f"[bold {style}]{message}[/]"),
        border_style=Style(color=style),
        padding=(1, 2),
        title=f"[bold {style}]{title}[/]" if title else None,
    )
    console.print(panel)


def plan_table(plan) -> Table:
    """Build a table listing the actions of an ActionPlan."""
    table = Table(
        title=f"{plan.mode.title()} plan",
        border_style=NordColors.FROST_3,
        header_style=f"bold {NordColors.FROST_2}",
    )
    table.add_column("#", justify="right", style=NordColors.POLAR_NIGHT_4)
    table.add_column("Action", style=NordColors.FROST_1)
    table.add_column("Subject", style=NordColors.SNOW_STORM_1)
    table.add_column("Phase", style=NordColors.FROST_4)
    for index, action in enumerate(plan.actions, 1):
        table.add_row(str(index), action.kind.value, action.subject, "change")
    for index, action in enumerate(plan.epilogue, len(plan.actions) + 1):
        table.add_row(str(index), action.kind.value, action.subject, "always")
    return table


# ----------------------------------------------------------------
# Logging Setup
# ----------------------------------------------------------------
def setup_logging(
    log_file: Optional[Union[str, Path]] = None,
    debug: bool = False,
    quiet: bool = False,
) -> logging.Logger:
    """
    Configure the package logger with a Rich console handler and a file handler.

    Args:
        log_file: Path of the persistent log; skipped when None or not writable.
        debug: Emit DEBUG records on the console.
        quiet: Only emit errors on the console (machine-readable output modes).

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    if quiet:
        console_handler.setLevel(logging.ERROR)
    else:
        console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logger.warning(f"Could not open log file {log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S")
            )
            logger.addHandler(file_handler)
            try:
                os.chmod(str(log_file), 0o600)
            except OSError as e:
                logger.warning(f"Could not set permissions on log file {log_file}: {e}")
    return logger
