"""Operator confirmation prompts."""

from typing import Protocol

import typer

from kata_manager.logging_config import get_logger

logger = get_logger(__name__)


class Confirmer(Protocol):
    def confirm(self, prompt: str, default: bool = False) -> bool: ...


class InteractiveConfirmer:
    """Asks the operator on the controlling terminal."""

    def confirm(self, prompt: str, default: bool = False) -> bool:
        answer = typer.confirm(prompt, default=default)
        logger.debug(f"Operator answered {'yes' if answer else 'no'} to: {prompt}")
        return answer


class StaticConfirmer:
    """Returns a fixed answer and records every prompt it was shown."""

    def __init__(self, answer: bool):
        self.answer = answer
        self.prompts: list[str] = []

    def confirm(self, prompt: str, default: bool = False) -> bool:
        self.prompts.append(prompt)
        return self.answer
