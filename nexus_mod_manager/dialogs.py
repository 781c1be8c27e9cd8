"""Confirmation dialogs shown before destructive or lossy operations."""

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

from rich.console import Console
from rich.prompt import Confirm, Prompt

CANCEL = "Cancel"


@dataclass
class Checkbox:
    id: str
    text: str
    value: bool = False


@dataclass
class DialogResult:
    action: str
    input: dict[str, bool] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.action == CANCEL


class Confirmer(Protocol):
    async def show(
        self,
        title: str,
        message: str,
        checkboxes: list[Checkbox],
        actions: list[str],
    ) -> DialogResult:
        ...


class ConsoleConfirmer:
    """Asks on the terminal."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    async def show(
        self,
        title: str,
        message: str,
        checkboxes: list[Checkbox],
        actions: list[str],
    ) -> DialogResult:
        return await asyncio.to_thread(self._ask, title, message, checkboxes, actions)

    def _ask(
        self,
        title: str,
        message: str,
        checkboxes: list[Checkbox],
        actions: list[str],
    ) -> DialogResult:
        self.console.print(f"[bold]{title}[/bold]")
        self.console.print(message)
        values = {
            box.id: Confirm.ask(box.text, default=box.value, console=self.console)
            for box in checkboxes
        }
        action = Prompt.ask("Action", choices=actions, default=CANCEL, console=self.console)
        return DialogResult(action=action, input=values)


class PresetConfirmer:
    """
    Answers every dialog the same way, for non-interactive use.

    With confirm set the first action other than Cancel is chosen.
    Checkbox values not given in choices keep their default.
    """

    def __init__(self, confirm: bool, choices: dict[str, bool] | None = None):
        self.confirm = confirm
        self.choices = choices or {}
        self.shown: list[str] = []

    async def show(
        self,
        title: str,
        message: str,
        checkboxes: list[Checkbox],
        actions: list[str],
    ) -> DialogResult:
        self.shown.append(title)
        committing = [a for a in actions if a != CANCEL]
        action = committing[0] if self.confirm and committing else CANCEL
        values = {box.id: self.choices.get(box.id, box.value) for box in checkboxes}
        return DialogResult(action=action, input=values)
