import asyncio
from typing import Any, Callable, Optional

from pydantic import ValidationError

from taskwire.core.correlation import RequestCallbacks, RequestHandle
from taskwire.core.exceptions import ProtocolError, RequestCancelled, RequestFailed
from taskwire.core.log_utils import Logger
from taskwire.core.task_client import TaskClient
from taskwire.schemas.plan_models import ExecutionPlan, OrchestratorResult, Step, StepStatus
from taskwire.schemas.websocket_models import ErrorInfo, Frame, PlanFrame, ProgressUpdate, StreamChunk


class ExecutionPlanRunner:
    """
    Drives one multi-step task over a shared TaskClient and keeps the state a UI renders:
    the plan, the running step, overall progress and the streamed text.
    """

    def __init__(
        self,
        client: TaskClient,
        on_step_start: Optional[Callable[[Step], None]] = None,
        on_step_complete: Optional[Callable[[Step, Any], None]] = None,
        on_stream_chunk: Optional[Callable[[str], None]] = None,
        on_plan_ready: Optional[Callable[[ExecutionPlan], None]] = None,
    ):
        self.client = client
        self.on_step_start = on_step_start
        self.on_step_complete = on_step_complete
        self.on_stream_chunk = on_stream_chunk
        self.on_plan_ready = on_plan_ready

        self.plan: Optional[ExecutionPlan] = None
        self.current_step: Optional[Step] = None
        self.progress: float = 0
        self.is_executing = False
        self.streamed_content = ""
        self.error: Optional[str] = None

        self._handle: Optional[RequestHandle] = None
        self._waiter: Optional[asyncio.Future] = None

    @property
    def request_id(self) -> Optional[str]:
        return self._handle.request_id if self._handle else None

    def reset(self) -> None:
        self.plan = None
        self.current_step = None
        self.progress = 0
        self.is_executing = False
        self.streamed_content = ""
        self.error = None
        self._handle = None
        self._waiter = None

    async def execute(self, prompt: str, database_type: str, schema: Any = None) -> OrchestratorResult:
        """
        Run an executeTask request to completion.

        Raises:
            RequestFailed: the server answered with an error frame
            RequestCancelled: cancel() was called while the task was running
        """
        # Step lookups use the plan held when execute() began. A plan broadcast that
        # arrives later replaces self.plan but is not consulted for progress frames.
        plan_at_start = self.plan
        self.reset()
        self.is_executing = True
        waiter = self._waiter = asyncio.get_running_loop().create_future()

        def on_progress(update: ProgressUpdate) -> None:
            self.progress = max(self.progress, update.progress)
            if plan_at_start is None:
                return
            step = plan_at_start.find_step(update.step)
            if step is None or not step.can_transition(StepStatus.RUNNING):
                return
            self.current_step = step.model_copy(update={"status": StepStatus.RUNNING})
            self._fire(self.on_step_start, self.current_step)

        def on_result(payload: Any) -> None:
            try:
                result = OrchestratorResult.model_validate(payload)
            except ValidationError as e:
                self._finish_with_error("Malformed execution result")
                self._settle(waiter, exc=ProtocolError("Malformed execution result", detail=e.errors()))
                return

            previous = self.plan
            result.plan = self._adopt_plan(result.plan)
            self.progress = 100
            self.is_executing = False
            for step in result.plan.steps:
                held = previous.find_step(step.id) if previous else None
                if step.status == StepStatus.COMPLETED and (held is None or held.status != StepStatus.COMPLETED):
                    self._fire(self.on_step_complete, step, step.result)
            self._settle(waiter, result=result)

        def on_error(info: ErrorInfo) -> None:
            message = info.message_or("Execution failed")
            self._finish_with_error(message)
            self._settle(waiter, exc=RequestFailed(message, detail=info.model_dump(by_alias=True, exclude_none=True)))

        def on_plan(frame: Frame) -> None:
            if not isinstance(frame, PlanFrame) or self._handle is None:
                return
            if frame.request_id != self._handle.request_id:
                return
            plan = self._adopt_plan(frame.payload)
            self._fire(self.on_plan_ready, plan)

        with self.client.subscribe("plan", on_plan):
            try:
                self._handle = await self.client.send_request(
                    "executeTask",
                    {"prompt": prompt, "databaseType": database_type, "schema": schema},
                    RequestCallbacks(
                        on_progress=on_progress,
                        on_stream=self._append_chunk,
                        on_result=on_result,
                        on_error=on_error,
                    ),
                )
            except Exception as e:
                self._finish_with_error(str(e))
                raise

            request_id = self._handle.request_id
            try:
                return await waiter
            finally:
                self.client.requests.discard(request_id)

    async def execute_with_streaming(self, prompt: str, database_type: str, schema: Any = None) -> str:
        """
        Run a chat request and return the accumulated text once the stream reports completion.
        The chat exchange never sends a result frame, so the entry is released locally.
        """
        self.reset()
        self.is_executing = True
        waiter = self._waiter = asyncio.get_running_loop().create_future()

        def on_stream(chunk: StreamChunk) -> None:
            if chunk.is_complete:
                self.is_executing = False
                self._settle(waiter, result=self.streamed_content)
            else:
                self._append_chunk(chunk)

        def on_error(info: ErrorInfo) -> None:
            message = info.message_or("Streaming failed")
            self._finish_with_error(message)
            self._settle(waiter, exc=RequestFailed(message, detail=info.model_dump(by_alias=True, exclude_none=True)))

        try:
            self._handle = await self.client.send_request(
                "chat",
                {"prompt": prompt, "context": {"schema": schema, "databaseType": database_type}},
                RequestCallbacks(on_stream=on_stream, on_error=on_error),
            )
        except Exception as e:
            self._finish_with_error(str(e))
            raise

        request_id = self._handle.request_id
        try:
            return await waiter
        finally:
            self.client.requests.discard(request_id)

    async def cancel(self) -> None:
        """
        Best-effort client-side cancellation of the running request, then reset().
        The server may keep working on it.
        """
        handle, waiter = self._handle, self._waiter
        if handle is not None:
            await handle.cancel()
        if waiter is not None:
            self._settle(waiter, exc=RequestCancelled("Execution cancelled"))
        self.reset()

    # ------------------------------------------------------------------

    def _append_chunk(self, chunk: StreamChunk) -> None:
        if chunk.is_complete:
            return
        self.streamed_content += chunk.chunk
        self._fire(self.on_stream_chunk, chunk.chunk)

    def _adopt_plan(self, plan: ExecutionPlan) -> ExecutionPlan:
        self.plan = plan.merge_from(self.plan)
        return self.plan

    def _finish_with_error(self, message: str) -> None:
        self.error = message
        self.is_executing = False
        if self.plan is not None:
            self.plan.mark_failed()

    @staticmethod
    def _settle(waiter: asyncio.Future, result: Any = None, exc: Optional[BaseException] = None) -> None:
        if waiter.done():
            return
        if exc is not None:
            waiter.set_exception(exc)
        else:
            waiter.set_result(result)

    @staticmethod
    def _fire(hook: Optional[Callable[..., None]], *args: Any) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as e:
            Logger.error("Execution hook failed", exc=e, hook=getattr(hook, "__name__", repr(hook)))
