"""Agent runner access and fire-and-forget task dispatch."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from task_dispatch.config import RunnerSettings
from task_dispatch.dispatch.models import DispatchOutcome, DispatchRequest, ModelSelector, Task
from task_dispatch.http import build_client, describe_http_error

logger = logging.getLogger(__name__)

SHELL_AGENT = "user"


class AgentRunnerError(RuntimeError):
    """A call to the agent runner failed."""


class DispatchFailure(RuntimeError):
    """A required dispatch step failed; the task stays claimed with no agent on it."""

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


class AgentRunner(Protocol):
    """Operations the dispatcher needs from a runner."""

    def create_session(self, title: str) -> str:
        """Open a unit of work and return its id."""

    def run_command(self, session_id: str, command: str) -> None:
        """Run a shell command inside the session."""

    def submit_instructions(
        self,
        session_id: str,
        *,
        model: ModelSelector,
        text: str,
    ) -> None:
        """Queue the instruction text as the session's input without waiting for the answer."""

    def list_sessions(self) -> list[dict[str, Any]]:
        """List sessions; used as a liveness probe."""


class OpencodeClient:
    """HTTP client for an opencode server."""

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._client = build_client(
            base_url=settings.base_url,
            timeout_seconds=settings.request_timeout_seconds,
            transport=transport,
        )

    def create_session(self, title: str) -> str:
        payload = self._request("POST", "/session", json={"title": title})
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not session_id:
            raise AgentRunnerError("opencode did not return a session id.")
        return str(session_id)

    def run_command(self, session_id: str, command: str) -> None:
        self._request(
            "POST",
            f"/session/{session_id}/shell",
            json={"agent": SHELL_AGENT, "command": command},
        )

    def submit_instructions(
        self,
        session_id: str,
        *,
        model: ModelSelector,
        text: str,
    ) -> None:
        self._request(
            "POST",
            f"/session/{session_id}/prompt_async",
            json={
                "model": {"providerID": model.provider_id, "modelID": model.model_id},
                "parts": [{"type": "text", "text": text}],
            },
        )

    def list_sessions(self) -> list[dict[str, Any]]:
        payload = self._request("GET", "/session")
        if not isinstance(payload, list):
            raise AgentRunnerError("opencode session listing is not a list.")
        return payload

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpencodeClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as error:
            raise AgentRunnerError(
                f"opencode {method} {path} failed: {describe_http_error(error)}",
            ) from error
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return None
        try:
            return response.json()
        except ValueError as error:
            raise AgentRunnerError(f"opencode {method} {path} returned invalid JSON.") from error


class AgentDispatcher:
    """Hands claimed tasks to the runner; never waits for the work to finish."""

    def __init__(self, *, runner: AgentRunner, model: ModelSelector) -> None:
        self.runner = runner
        self.model = model

    def dispatch(self, task: Task, instructions: str) -> DispatchOutcome:
        """Open a session, point it at the project, and submit the instructions.

        Each step is contained: a failed directory change only warns, while a
        failed session or submission ends this dispatch with ``failed_stage``
        set. The task is left active in the store either way.
        """

        request = DispatchRequest(
            title=task.title,
            working_dir=task.project_path,
            instructions=instructions,
            model=self.model,
        )
        outcome = DispatchOutcome(task_id=task.task_id)
        logger.info('Starting agent session for: "%s"', task.title)
        logger.info("  Project: %s (%s)", task.project, task.project_path)

        try:
            outcome.session_id = self._open_session(request)
            self._change_directory(outcome, outcome.session_id, request)
            self._submit(outcome.session_id, request)
        except DispatchFailure as error:
            outcome.failed_stage = error.stage
            outcome.error = str(error)
            logger.error(
                'Dispatch of "%s" failed at %s: %s. Task stays claimed with no agent; '
                "reset its status at %s to retry.",
                task.title,
                error.stage,
                error,
                task.url,
            )
            return outcome

        logger.info("Instructions sent to session %s", outcome.session_id)
        logger.info("  Task: %s", task.title)
        logger.info("  Working Dir: %s", task.project_path)
        logger.info("  Page: %s", task.url)
        logger.info("  Model: %s", self.model)
        return outcome

    def _open_session(self, request: DispatchRequest) -> str:
        try:
            session_id = self.runner.create_session(request.title)
        except AgentRunnerError as error:
            raise DispatchFailure(str(error), stage="create_session") from error
        logger.info("Session created: %s", session_id)
        return session_id

    def _change_directory(
        self,
        outcome: DispatchOutcome,
        session_id: str,
        request: DispatchRequest,
    ) -> None:
        try:
            self.runner.run_command(session_id, f'cd "{request.working_dir}" && pwd')
        except AgentRunnerError as error:
            logger.warning("Could not change directory to %s: %s", request.working_dir, error)
            outcome.warnings.append(f"change_directory: {error}")
            return
        logger.info("Changed directory to %s", request.working_dir)

    def _submit(self, session_id: str, request: DispatchRequest) -> None:
        try:
            self.runner.submit_instructions(
                session_id,
                model=request.model,
                text=request.instructions,
            )
        except AgentRunnerError as error:
            raise DispatchFailure(str(error), stage="submit_instructions") from error
