from __future__ import annotations

from abc import ABC, abstractmethod

import click

from consortium.state.models import Question


class InteractionContext(ABC):
    """How the machine talks to whoever is driving the run."""

    @abstractmethod
    def confirm(self, message: str, default: bool = True) -> bool: ...

    @abstractmethod
    def acknowledge(self, questions: list[Question]) -> dict[str, str]:
        """Show pending questions; return any answers given, keyed by question id."""

    @abstractmethod
    def notify(self, message: str) -> None: ...


class ConsoleInteraction(InteractionContext):
    def __init__(self, *, auto_approve: bool = False) -> None:
        self.auto_approve = auto_approve

    def confirm(self, message: str, default: bool = True) -> bool:
        if self.auto_approve:
            click.echo(f"{message} [auto-approved]")
            return True
        return click.confirm(message, default=default)

    def acknowledge(self, questions: list[Question]) -> dict[str, str]:
        if not questions:
            return {}
        click.echo("")
        click.secho("Agents raised questions:", fg="yellow")
        for question in questions:
            click.echo(f"  {question.id} [{question.origin}] {question.text}")
        if self.auto_approve:
            click.echo("  Answer later with `robot-consortium answer <id> <answer>`.")
            return {}

        answers: dict[str, str] = {}
        for question in questions:
            answer = click.prompt(
                f"Answer {question.id} (blank to skip)",
                default="",
                show_default=False,
            ).strip()
            if answer:
                answers[question.id] = answer
        return answers

    def notify(self, message: str) -> None:
        click.echo(message)
