"""
HOMESERVER Panel Migration Tool
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Operator interaction.

Every decision the pipeline must not take on its own (database replacement,
extension opt-in, transfer fallback) is asked through a Prompter so the
question and its possible answers stay explicit and scriptable in tests.
"""

from typing import Callable, Optional, Sequence, Tuple

from .index import log_message
from .errors import AbortedByOperator

CONFIRM_WORD = "YES"


class Prompter:
    """Interface for operator decisions."""

    def confirm(self, question: str) -> bool:
        raise NotImplementedError

    def choose(self, question: str, options: Sequence[Tuple[str, str]]) -> str:
        """Return the key of the chosen option from (key, label) pairs."""
        raise NotImplementedError


class ConsolePrompter(Prompter):
    """Prompts on the controlling terminal."""

    def __init__(self, input_func: Callable[[str], str] = input, output_func: Callable[[str], None] = print):
        self._input = input_func
        self._output = output_func

    def _read(self, prompt: str) -> Optional[str]:
        try:
            return self._input(prompt).strip()
        except EOFError:
            return None

    def confirm(self, question: str) -> bool:
        answer = self._read(f"{question} ({CONFIRM_WORD} to continue): ")
        if answer is None:
            raise AbortedByOperator("no operator input", question)
        confirmed = answer == CONFIRM_WORD
        log_message(f"Operator {'confirmed' if confirmed else 'declined'}: {question}", "DEBUG")
        return confirmed

    def choose(self, question: str, options: Sequence[Tuple[str, str]]) -> str:
        if not options:
            raise ValueError("choose() needs at least one option")

        self._output(question)
        for number, (_, label) in enumerate(options, start=1):
            self._output(f"{number}) {label}")

        while True:
            answer = self._read(f"Choose [1-{len(options)}]: ")
            if answer is None:
                raise AbortedByOperator("no operator input", question)
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                key = options[int(answer) - 1][0]
                log_message(f"Operator chose '{key}': {question}", "DEBUG")
                return key
            self._output(f"Invalid choice: {answer}")
