"""
Terminal output and prompts, rendered with gum.
"""

import os
import shutil
import subprocess
import sys
from typing import List, Optional

from tqdm import tqdm

from omarchy_setup.shell import child_handles_interrupts, run

# ANSI color numbers, as gum expects them
RED = 1
GREEN = 2
YELLOW = 3
CYAN = 6


class Console:
    """
    Colored status lines for each phase of the setup.

    Lines are rendered with ``gum style`` and written through ``tqdm.write`` so
    they don't tear an active progress bar. Before the prerequisite check has
    confirmed that gum is installed, plain ANSI escapes are used instead.

    Attributes:
        use_gum (bool): Whether to render with gum
    """

    def __init__(self, use_gum: Optional[bool] = None) -> None:
        self.use_gum = shutil.which("gum") is not None if use_gum is None else use_gum

    def style(
        self,
        *lines: str,
        foreground: int,
        padding: str = "0",
        border: Optional[str] = None,
        margin: Optional[str] = None,
    ) -> None:
        """
        Write a block of text.

        Args:
            *lines: Lines of the block
            foreground: ANSI color number
            padding: gum padding, one to four CSS-style values
            border: gum border style, e.g. "double"
            margin: gum margin, one to four CSS-style values
        """
        text = self._render_gum(lines, foreground, padding, border, margin) if self.use_gum else None
        if text is None:
            text = self._render_plain(lines, foreground, padding)
        tqdm.write(text)

    def _render_gum(
        self,
        lines: tuple,
        foreground: int,
        padding: str,
        border: Optional[str],
        margin: Optional[str],
    ) -> Optional[str]:
        args = ["gum", "style", "--foreground", str(foreground), "--padding", padding]
        if border:
            args += ["--border", border]
        if margin:
            args += ["--margin", margin]
        # stdout is a pipe here, so gum would otherwise drop the colors
        env = dict(os.environ, CLICOLOR_FORCE="1")
        try:
            result = subprocess.run(
                [*args, *lines], capture_output=True, text=True, env=env, check=False
            )
        except OSError:
            return None
        if result.returncode != 0:
            return None
        return result.stdout.rstrip("\n")

    @staticmethod
    def _render_plain(lines: tuple, foreground: int, padding: str) -> str:
        sides = [int(part) for part in padding.split()]
        top = sides[0]
        bottom = sides[2] if len(sides) > 2 else sides[0]
        body = "\n".join(f"\033[3{foreground}m{line}\033[0m" for line in lines)
        return "\n" * top + body + "\n" * bottom

    def clear(self) -> None:
        if sys.stdout.isatty():
            sys.stdout.write("\033[2J\033[H")
            sys.stdout.flush()

    def banner(self, *lines: str, foreground: int = GREEN) -> None:
        self.style(*lines, foreground=foreground, padding="1 2", border="double", margin="1 0")

    def heading(self, message: str) -> None:
        self.style(message, foreground=CYAN, padding="1 0 0 0")

    def info(self, message: str) -> None:
        self.style(message, foreground=GREEN, padding="1 0 0 0")

    def progress(self, message: str) -> None:
        self.style(message, foreground=YELLOW, padding="1 0 0 0")

    def warning(self, message: str) -> None:
        self.style(message, foreground=YELLOW)

    def failure(self, message: str) -> None:
        self.style(message, foreground=RED)

    def error(self, message: str) -> None:
        self.style(f"Error: {message}", foreground=RED, padding="1 0 1 0")

    def cancelled(self) -> None:
        self.style("Setup cancelled by user", foreground=RED, padding="1 0 1 0")

    def choose(self, options: List[str], header: str) -> Optional[str]:
        """
        Let the user pick one of the options with ``gum choose``.

        gum handles Ctrl+C itself while the picker is open.

        Args:
            options: Choices, shown in order
            header: Header line above the choices

        Returns:
            The chosen option, or None if the picker closed without a choice

        Raises:
            SetupCancelled: If the user cancelled the picker
        """
        with child_handles_interrupts():
            result = run(
                ["gum", "choose", "--header", header],
                input="\n".join(options) + "\n",
                stderr=None,
            )
        choice = result.stdout.strip()
        if result.returncode != 0 or not choice:
            return None
        return choice
