"""Runs one coding-agent process per annotation and streams its progress.

``AgentInvoker.process`` returns an :class:`AgentRun`: a single-use async
iterator of :class:`ProgressEvent` objects that always ends with a ``done``
event, after which ``run.outcome`` holds exactly one :class:`Outcome`.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections import deque
from typing import AsyncIterator, Deque, List, Optional, Tuple

import structlog

from skema_daemon.agents.models import Outcome, ProgressEvent
from skema_daemon.agents.providers import AgentProvider, get_provider
from skema_daemon.agents.vision import VisionAnalyzer
from skema_daemon.config import DaemonConfig
from skema_daemon.core_models import StoredAnnotation
from skema_daemon.exceptions import AgentFailure, AgentTimeout
from skema_daemon.metrics import AGENT_RUN_SECONDS, AGENT_RUNS
from skema_daemon.prompts import build_prompt

log = structlog.get_logger(__name__)

# Agent CLIs emit large single-line JSON records (whole file contents in tool results).
_STREAM_LIMIT = 16 * 1024 * 1024
_STDERR_TAIL = 20
_SUMMARY_CHARS = 500


class AgentRun:
    """One cancellable agent run. Iterate it once; read ``outcome`` afterwards."""

    def __init__(
        self,
        stored: StoredAnnotation,
        provider: AgentProvider,
        config: DaemonConfig,
        vision: Optional[VisionAnalyzer] = None,
    ):
        self.annotation_id = stored.id
        self.stored = stored
        self.provider = provider
        self.config = config
        self.vision = vision
        self.outcome: Optional[Outcome] = None
        self.prompt: Optional[str] = None
        self.vision_description: Optional[str] = stored.vision_description
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._started = False
        self._cancelled = False

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        if self._started:
            raise RuntimeError(f"Agent run for {self.annotation_id} has already been consumed")
        self._started = True
        return self._events()

    async def wait(self) -> Outcome:
        """Drain the run (discarding events) and return its outcome."""
        if not self._started:
            async for _ in self:
                pass
        while self.outcome is None:
            await asyncio.sleep(0.05)
        return self.outcome

    async def cancel(self) -> None:
        """Terminate the agent process; the event stream then finishes with a cancelled failure."""
        self._cancelled = True
        if self._proc is not None:
            await _terminate(self._proc, self.config.terminate_grace_s)
        log.info("agent_run_cancelled", annotation_id=self.annotation_id)

    # ------------------------------------------------------------------ #

    def _event(self, type_: str, **fields) -> ProgressEvent:
        return ProgressEvent(type=type_, annotation_id=self.annotation_id, provider=self.provider.name, **fields)

    async def _events(self) -> AsyncIterator[ProgressEvent]:
        started_at = time.monotonic()
        try:
            async for event in self._run():
                yield event
        finally:
            if self._proc is not None and self._proc.returncode is None:
                await _terminate(self._proc, self.config.terminate_grace_s)
            if self.outcome is None:
                self.outcome = Outcome.failed("Cancelled", cancelled=True)
            label = "success" if self.outcome.success else ("timeout" if self.outcome.timed_out else "failure")
            AGENT_RUNS.labels(provider=self.provider.name, outcome=label).inc()
            AGENT_RUN_SECONDS.labels(provider=self.provider.name).observe(time.monotonic() - started_at)

    async def _run(self) -> AsyncIterator[ProgressEvent]:
        ann = self.stored.annotation
        if ann.type == "drawing" and ann.drawing_image and not self.vision_description and self.vision and self.vision.available:
            yield self._event("message", role="assistant", content="Analyzing drawing...")
            self.vision_description = await self.vision.describe(ann.drawing_image)
            if self.vision_description:
                yield self._event("message", role="assistant", content=f"Vision analysis: {self.vision_description}")
            else:
                yield self._event("error", content="Vision analysis failed; continuing without it")

        self.prompt = build_prompt(
            self.stored,
            fast_mode=self.config.fast_mode,
            max_chars=self.config.max_prompt_chars,
            vision_description=self.vision_description,
        )
        yield self._event("debug", label="AGENT PROMPT", content=self.prompt)
        if self._cancelled:
            self.outcome = Outcome.failed("Cancelled", cancelled=True)
            yield self._event("done", content="Cancelled before start")
            return

        argv = self.provider.build_command(self.prompt, self.config.model)
        log.info("agent_run_starting", annotation_id=self.annotation_id, provider=self.provider.name,
                 prompt_chars=len(self.prompt))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.config.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
                start_new_session=True,
            )
        except OSError as exc:
            failure = AgentFailure(f"Failed to start {self.provider.name} agent: {exc}", exit_code=-1)
            log.error("agent_spawn_failed", annotation_id=self.annotation_id, error=str(exc))
            self.outcome = Outcome.from_failure(failure)
            yield self._event("error", content=failure.reason)
            yield self._event("done", content="Agent did not start", code=-1)
            return
        if self._cancelled:
            # cancel() arrived while the process was being spawned.
            await _terminate(self._proc, self.config.terminate_grace_s)
            self.outcome = Outcome.failed("Cancelled", cancelled=True, exit_code=self._proc.returncode)
            yield self._event("done", content="Cancelled during start", code=self._proc.returncode)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.agent_timeout_s
        queue: asyncio.Queue[Tuple[str, Optional[str]]] = asyncio.Queue()
        readers = [
            asyncio.create_task(_pump(self._proc.stdout, "stdout", queue)),
            asyncio.create_task(_pump(self._proc.stderr, "stderr", queue)),
        ]
        stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL)
        messages: List[str] = []
        result_text: Optional[str] = None
        reported_error: Optional[str] = None
        timed_out = False
        open_streams = len(readers)

        try:
            while open_streams:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    timed_out = True
                    break
                try:
                    stream, line = await asyncio.wait_for(queue.get(), remaining)
                except asyncio.TimeoutError:
                    timed_out = True
                    break
                if line is None:
                    open_streams -= 1
                    continue
                if stream == "stderr":
                    if line.strip():
                        stderr_tail.append(line.strip())
                        yield self._event("debug", label="stderr", content=line.rstrip())
                    continue
                for event in self.provider.parse_line(line):
                    event.annotation_id = self.annotation_id
                    if event.label == "result":
                        result_text = event.content or result_text
                        if self.provider.is_error_result(event):
                            reported_error = event.content or "Agent reported an error"
                    elif event.type == "message" and event.role == "assistant" and event.content:
                        messages.append(event.content)
                    yield event

            if timed_out:
                await _terminate(self._proc, self.config.terminate_grace_s)
            else:
                try:
                    await asyncio.wait_for(self._proc.wait(), max(deadline - loop.time(), 0.1))
                except asyncio.TimeoutError:
                    timed_out = True
                    await _terminate(self._proc, self.config.terminate_grace_s)
        finally:
            for task in readers:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

        code = self._proc.returncode
        if self._cancelled:
            self.outcome = Outcome.failed("Cancelled", cancelled=True, exit_code=code)
        elif timed_out:
            failure: AgentFailure = AgentTimeout(self.config.agent_timeout_s, exit_code=code)
            self.outcome = Outcome.from_failure(failure)
            yield self._event("error", content=failure.reason)
        elif code != 0:
            detail = " | ".join(stderr_tail) or reported_error or "no output"
            failure = AgentFailure(f"Agent exited with code {code}: {detail}", exit_code=code)
            self.outcome = Outcome.from_failure(failure)
            yield self._event("error", content=failure.reason)
        elif reported_error:
            self.outcome = Outcome.from_failure(AgentFailure(reported_error, exit_code=code))
        else:
            self.outcome = Outcome.succeeded(_summarize(result_text, messages), exit_code=code)

        log.info(
            "agent_run_finished",
            annotation_id=self.annotation_id,
            success=self.outcome.success,
            exit_code=code,
            timed_out=timed_out,
        )
        yield self._event("done", content=f"Process exited with code {code}", code=code,
                          status="success" if self.outcome.success else "error")


class AgentInvoker:
    """Creates agent runs for annotations. At most one run is active at a time."""

    def __init__(self, config: DaemonConfig, provider: Optional[AgentProvider] = None,
                 vision: Optional[VisionAnalyzer] = None):
        self.config = config
        self.provider = provider or get_provider(config.provider, config.agent_command)
        self.vision = vision
        self.active: Optional[AgentRun] = None

    def process(self, stored: StoredAnnotation) -> AgentRun:
        if self.active is not None and not self.active.finished:
            raise RuntimeError(f"Agent already running for {self.active.annotation_id}")
        self.active = AgentRun(stored, self.provider, self.config, self.vision)
        return self.active

    async def cancel_active(self, annotation_id: Optional[str] = None) -> bool:
        run = self.active
        if run is None or run.finished:
            return False
        if annotation_id is not None and run.annotation_id != annotation_id:
            return False
        await run.cancel()
        return True


async def _pump(stream: Optional[asyncio.StreamReader], name: str,
                queue: "asyncio.Queue[Tuple[str, Optional[str]]]") -> None:
    if stream is None:
        await queue.put((name, None))
        return
    try:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            await queue.put((name, raw.decode("utf-8", errors="replace")))
    finally:
        await queue.put((name, None))


async def _terminate(proc: asyncio.subprocess.Process, grace_s: float) -> None:
    """SIGTERM the agent's process group, then SIGKILL after *grace_s*."""
    if proc.returncode is not None:
        return
    _signal(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), grace_s)
    except asyncio.TimeoutError:
        log.warning("agent_kill", pid=proc.pid, grace_s=grace_s)
        _signal(proc, signal.SIGKILL)
        await proc.wait()


def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except (ProcessLookupError, PermissionError):
        pass


def _summarize(result_text: Optional[str], messages: List[str]) -> str:
    text = (result_text or "").strip() or (messages[-1].strip() if messages else "")
    if not text:
        return "Agent completed"
    return text if len(text) <= _SUMMARY_CHARS else text[-_SUMMARY_CHARS:]
