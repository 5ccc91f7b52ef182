from typing import Callable

import typer
from loguru import logger

from .errors import ConfirmationDenied


def _typer_prompt(prompt: str) -> bool:
    return typer.confirm(prompt, default=False)


class ConfirmationGate:
    """Go/no-go check before the cluster is changed"""

    def __init__(self, prompt_fn: Callable[[str], bool] = _typer_prompt):
        self.prompt_fn = prompt_fn

    def confirm(self, prompt: str, forced: bool) -> bool:
        if forced:
            return True
        return self.prompt_fn(prompt)

    def require(self, prompt: str, forced: bool):
        if not self.confirm(prompt, forced):
            logger.info("Operation cancelled by user.")
            raise ConfirmationDenied(prompt)
