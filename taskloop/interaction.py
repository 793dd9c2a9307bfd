"""
Human channel.

The approval gate, the mistake-limit handler and the ``ask_followup`` tool
all talk to a person through an ``Asker``. Prompt kinds:

  command / file_operation / api_request / tool_use   approval decisions
  auto_approval_limit                                  "continue automating?"
  mistake_limit_reached                                guidance after repeated mistakes
  followup                                             free-form question from the model
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

YES = "yes"
NO = "no"
MESSAGE = "message"


@dataclass
class AskResponse:
    response: str  # "yes" | "no" | "message"
    text: str | None = None

    @property
    def approved(self) -> bool:
        return self.response == YES


class Asker(Protocol):
    def ask(self, prompt_kind: str, payload: dict[str, Any]) -> AskResponse: ...


class HeadlessAsker:
    """Non-interactive channel: every approval is refused, questions go unanswered."""

    def ask(self, prompt_kind: str, payload: dict[str, Any]) -> AskResponse:
        logger.warning(f"[APPROVAL] No human available for {prompt_kind}, answering no")
        return AskResponse(response=NO)


class ConsoleAsker:
    """Terminal channel backed by rich prompts."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def ask(self, prompt_kind: str, payload: dict[str, Any]) -> AskResponse:
        if prompt_kind == "followup":
            self.console.print(Panel(payload.get("question", ""), title="Question", border_style="cyan"))
            answer = Prompt.ask("[bold]Your answer[/]", console=self.console)
            return AskResponse(response=MESSAGE, text=answer)

        if prompt_kind == "mistake_limit_reached":
            self.console.print(Panel(
                f"The task made {payload.get('count', '?')} consecutive mistakes.",
                title="Guidance needed",
                border_style="yellow",
            ))
            if not Confirm.ask("[bold]Continue the task?[/]", console=self.console):
                return AskResponse(response=NO)
            guidance = Prompt.ask("[bold]Guidance (blank for none)[/]", default="", console=self.console)
            return AskResponse(response=YES, text=guidance or None)

        if prompt_kind == "auto_approval_limit":
            prompt = (
                f"{payload.get('count')} operations were auto-approved in the last "
                f"{payload.get('window_seconds')}s. Continue automating?"
            )
            return AskResponse(response=YES if Confirm.ask(f"[bold]{prompt}[/]", console=self.console) else NO)

        description = payload.get("description", prompt_kind)
        details = payload.get("details") or {}
        body = description
        if details:
            body += "\n\n" + "\n".join(f"[dim]{k}:[/] {v}" for k, v in details.items())
        self.console.print(Panel(body, title=f"Approval: {prompt_kind}", border_style="red"))
        approved = Confirm.ask("[bold]Approve?[/]", console=self.console)
        return AskResponse(response=YES if approved else NO)
