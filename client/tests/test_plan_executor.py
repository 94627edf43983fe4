"""Tests for the execution plan state machine."""

import asyncio

import pytest
from conftest import FakeConnector, chunk, frame, progress, settle

from taskwire.core.exceptions import ProtocolError, RequestCancelled, RequestFailed
from taskwire.core.task_client import TaskClient
from taskwire.schemas.plan_models import ExecutionPlan, PlanStatus, Step, StepStatus, StepType
from taskwire.services.plan_executor import ExecutionPlanRunner

# ============================================================================
# SAMPLE DATA FACTORIES
# ============================================================================


def plan_payload(*statuses: str, plan_status: str = "executing", plan_id: str = "plan_1") -> dict:
    return {
        "id": plan_id,
        "description": "Generate schema and query",
        "steps": [
            {
                "id": index + 1,
                "name": f"Step {index + 1}",
                "description": "",
                "type": "generation",
                "dependencies": [],
                "status": status,
                "result": {"summary": f"done {index + 1}"} if status == "completed" else None,
            }
            for index, status in enumerate(statuses)
        ],
        "totalSteps": len(statuses),
        "currentStep": 0,
        "status": plan_status,
    }


def result_payload(*statuses: str) -> dict:
    return {
        "plan": plan_payload(*statuses, plan_status="completed"),
        "finalResult": {"sql": "SELECT 1"},
        "summary": "2/2 steps completed",
        "executionTime": 1234,
    }


async def start(runner: ExecutionPlanRunner, connector: FakeConnector) -> tuple[asyncio.Task, str]:
    task = asyncio.create_task(runner.execute("list users", "postgresql", {"tables": []}))
    await settle()
    return task, connector.latest.sent_of_type("executeTask")[0]["requestId"]


# ============================================================================
# TESTS
# ============================================================================


class TestExecute:
    """Test execute() against the executeTask exchange."""

    @pytest.mark.asyncio
    async def test_sends_execute_task_request(self, client: TaskClient, connector: FakeConnector) -> None:
        runner = ExecutionPlanRunner(client)
        task, request_id = await start(runner, connector)

        sent = connector.latest.sent_of_type("executeTask")[0]
        assert sent["payload"] == {"prompt": "list users", "databaseType": "postgresql", "schema": {"tables": []}}
        assert runner.request_id == request_id
        assert runner.is_executing

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_stream_chunks_accumulate_in_order(self, client: TaskClient, connector: FakeConnector) -> None:
        """Chunks "Hel", "lo, ", "world" then result give exactly "Hello, world"."""
        chunks = []
        runner = ExecutionPlanRunner(client, on_stream_chunk=chunks.append)
        task, request_id = await start(runner, connector)
        socket = connector.latest

        socket.push(chunk(request_id, "Hel"))
        await settle()
        socket.push(chunk(request_id, "lo, "))
        socket.push(chunk(request_id, "world"))
        socket.push(chunk(request_id, "", complete=True))
        socket.push(frame("result", result_payload("completed", "completed"), request_id))

        result = await task
        assert runner.streamed_content == "Hello, world"
        assert chunks == ["Hel", "lo, ", "world"]
        assert result.final_result == {"sql": "SELECT 1"}
        assert result.execution_time == 1234

    @pytest.mark.asyncio
    async def test_result_finishes_execution(self, client: TaskClient, connector: FakeConnector) -> None:
        completed = []
        runner = ExecutionPlanRunner(client, on_step_complete=lambda step, result: completed.append(step.id))
        task, request_id = await start(runner, connector)

        connector.latest.push(progress(request_id, 1, 50, total=2))
        connector.latest.push(frame("result", result_payload("completed", "failed"), request_id))
        result = await task

        assert runner.progress == 100
        assert not runner.is_executing
        assert runner.plan is result.plan
        assert runner.plan.status == PlanStatus.COMPLETED
        assert completed == [1]
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_progress_never_regresses(self, client: TaskClient, connector: FakeConnector) -> None:
        runner = ExecutionPlanRunner(client)
        task, request_id = await start(runner, connector)

        connector.latest.push(progress(request_id, 2, 66))
        connector.latest.push(progress(request_id, 1, 33))
        await settle()

        assert runner.progress == 66
        await runner.cancel()
        with pytest.raises(RequestCancelled):
            await task

    @pytest.mark.asyncio
    async def test_error_frame_fails_execution(self, client: TaskClient, connector: FakeConnector) -> None:
        runner = ExecutionPlanRunner(client)
        task, request_id = await start(runner, connector)

        connector.latest.push(frame("plan", plan_payload("running", "pending"), request_id))
        connector.latest.push(frame("error", {"error": "LLM quota exceeded"}, request_id))

        with pytest.raises(RequestFailed, match="LLM quota exceeded"):
            await task
        assert runner.error == "LLM quota exceeded"
        assert not runner.is_executing
        assert runner.plan.status == PlanStatus.FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{"error": ""}, {}], ids=["empty", "missing"])
    async def test_blank_error_message_uses_default(
        self, client: TaskClient, connector: FakeConnector, payload: dict
    ) -> None:
        runner = ExecutionPlanRunner(client)
        task, request_id = await start(runner, connector)

        connector.latest.push(frame("error", payload, request_id))

        with pytest.raises(RequestFailed, match="Execution failed"):
            await task
        assert runner.error == "Execution failed"

    @pytest.mark.asyncio
    async def test_malformed_result_is_reported(self, client: TaskClient, connector: FakeConnector) -> None:
        runner = ExecutionPlanRunner(client)
        task, request_id = await start(runner, connector)

        connector.latest.push(frame("result", {"summary": "no plan"}, request_id))

        with pytest.raises(ProtocolError, match="Malformed execution result"):
            await task
        assert runner.error == "Malformed execution result"


class TestPlanBroadcast:
    """Test plan frames delivered through the broadcast registry."""

    @pytest.mark.asyncio
    async def test_matching_plan_frame_is_adopted(self, client: TaskClient, connector: FakeConnector) -> None:
        ready = []
        runner = ExecutionPlanRunner(client, on_plan_ready=ready.append)
        task, request_id = await start(runner, connector)

        connector.latest.push(frame("plan", plan_payload("pending", "pending", plan_status="planning"), request_id))
        connector.latest.push(frame("plan", plan_payload("pending", plan_id="other"), "req_someone_else"))
        await settle()

        assert runner.plan is not None
        assert runner.plan.id == "plan_1"
        assert [p.id for p in ready] == ["plan_1"]
        assert client.subscriptions.count("plan") == 1

        connector.latest.push(frame("result", result_payload("completed", "completed"), request_id))
        await task
        assert client.subscriptions.count("plan") == 0

    @pytest.mark.asyncio
    async def test_step_statuses_are_monotonic(self, client: TaskClient, connector: FakeConnector) -> None:
        """Once completed or failed, a step never returns to pending or running."""
        runner = ExecutionPlanRunner(client)
        task, request_id = await start(runner, connector)
        socket = connector.latest

        socket.push(frame("plan", plan_payload("completed", "failed", "running"), request_id))
        socket.push(frame("plan", plan_payload("pending", "running", "pending"), request_id))
        await settle()

        statuses = [s.status for s in runner.plan.steps]
        assert statuses == [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.RUNNING]
        assert runner.plan.steps[0].result == {"summary": "done 1"}

        socket.push(frame("result", result_payload("running", "running", "completed"), request_id))
        result = await task

        assert [s.status for s in result.plan.steps] == [
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_unregistered_step_type_is_kept(self, client: TaskClient, connector: FakeConnector) -> None:
        """A step type outside the known set still yields a plan and a successful result."""
        ready = []
        runner = ExecutionPlanRunner(client, on_plan_ready=ready.append)
        task, request_id = await start(runner, connector)

        plan = plan_payload("pending", "pending")
        plan["steps"][1]["type"] = "query"
        connector.latest.push(frame("plan", plan, request_id))
        await settle()

        assert [p.id for p in ready] == ["plan_1"]
        assert runner.plan.steps[0].type == StepType.GENERATION
        assert runner.plan.steps[1].type == "query"

        result = result_payload("completed", "completed")
        result["plan"]["steps"][1]["type"] = "query"
        connector.latest.push(frame("result", result, request_id))

        outcome = await task
        assert outcome.final_result == {"sql": "SELECT 1"}
        assert outcome.plan.steps[1].type == "query"
        assert runner.error is None


class TestStepTracking:
    """Test progress-driven step transitions."""

    @pytest.mark.asyncio
    async def test_progress_marks_known_step_running(self, client: TaskClient, connector: FakeConnector) -> None:
        """A plan held before execute() began is used for step lookups."""
        started = []
        runner = ExecutionPlanRunner(client, on_step_start=started.append)
        runner.plan = ExecutionPlan.model_validate(plan_payload("pending", "pending"))
        task, request_id = await start(runner, connector)

        connector.latest.push(progress(request_id, 2, 50, total=2))
        await settle()

        assert runner.current_step is not None
        assert runner.current_step.id == 2
        assert runner.current_step.status == StepStatus.RUNNING
        assert [s.id for s in started] == [2]

        await runner.cancel()
        with pytest.raises(RequestCancelled):
            await task

    @pytest.mark.asyncio
    async def test_plan_arriving_mid_run_is_not_used_for_lookups(
        self, client: TaskClient, connector: FakeConnector
    ) -> None:
        """Observed behavior: a plan delivered after execute() began does not drive current_step."""
        started = []
        runner = ExecutionPlanRunner(client, on_step_start=started.append)
        task, request_id = await start(runner, connector)

        connector.latest.push(frame("plan", plan_payload("pending", "pending"), request_id))
        connector.latest.push(progress(request_id, 1, 50, total=2))
        await settle()

        assert runner.plan is not None
        assert runner.progress == 50
        assert runner.current_step is None
        assert started == []

        await runner.cancel()
        with pytest.raises(RequestCancelled):
            await task

    @pytest.mark.asyncio
    async def test_terminal_step_is_not_restarted(self, client: TaskClient, connector: FakeConnector) -> None:
        started = []
        runner = ExecutionPlanRunner(client, on_step_start=started.append)
        runner.plan = ExecutionPlan.model_validate(plan_payload("completed", "pending"))
        task, request_id = await start(runner, connector)

        connector.latest.push(progress(request_id, 1, 50, total=2))
        await settle()

        assert runner.current_step is None
        assert started == []
        await runner.cancel()
        with pytest.raises(RequestCancelled):
            await task


class TestStreamingAndCancel:
    """Test the chat streaming path and cancellation."""

    @pytest.mark.asyncio
    async def test_execute_with_streaming_returns_text(self, client: TaskClient, connector: FakeConnector) -> None:
        runner = ExecutionPlanRunner(client)
        task = asyncio.create_task(runner.execute_with_streaming("explain", "mysql", None))
        await settle()
        sent = connector.latest.sent_of_type("chat")[0]
        assert sent["payload"] == {"prompt": "explain", "context": {"schema": None, "databaseType": "mysql"}}

        connector.latest.push(chunk(sent["requestId"], "Use an "))
        connector.latest.push(chunk(sent["requestId"], "index."))
        connector.latest.push(chunk(sent["requestId"], "", complete=True))

        assert await task == "Use an index."
        assert not runner.is_executing
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_execute_with_streaming_error(self, client: TaskClient, connector: FakeConnector) -> None:
        runner = ExecutionPlanRunner(client)
        task = asyncio.create_task(runner.execute_with_streaming("explain", "mysql"))
        await settle()
        request_id = connector.latest.sent_of_type("chat")[0]["requestId"]

        connector.latest.push(frame("error", {"error": "stream broke"}, request_id))

        with pytest.raises(RequestFailed, match="stream broke"):
            await task
        assert runner.error == "stream broke"

    @pytest.mark.asyncio
    async def test_streaming_error_without_message(self, client: TaskClient, connector: FakeConnector) -> None:
        runner = ExecutionPlanRunner(client)
        task = asyncio.create_task(runner.execute_with_streaming("explain", "mysql"))
        await settle()
        request_id = connector.latest.sent_of_type("chat")[0]["requestId"]

        connector.latest.push(frame("error", {}, request_id))

        with pytest.raises(RequestFailed, match="Streaming failed"):
            await task
        assert runner.error == "Streaming failed"

    @pytest.mark.asyncio
    async def test_cancel_resets_and_notifies(self, client: TaskClient, connector: FakeConnector) -> None:
        runner = ExecutionPlanRunner(client)
        task, request_id = await start(runner, connector)
        connector.latest.push(chunk(request_id, "partial"))
        await settle()

        await runner.cancel()

        with pytest.raises(RequestCancelled):
            await task
        assert runner.streamed_content == ""
        assert runner.request_id is None
        assert not runner.is_executing
        assert connector.latest.sent_of_type("cancel")[0]["payload"] == {"requestId": request_id}

        connector.latest.push(frame("result", result_payload("completed"), request_id))
        await settle()
        assert runner.plan is None


class TestStepModel:
    """Test the step transition rules directly."""

    def test_forward_transitions_only(self) -> None:
        step = Step(id=1, name="analyse")

        assert step.advance(StepStatus.RUNNING)
        assert not step.advance(StepStatus.PENDING)
        assert step.advance(StepStatus.COMPLETED)
        assert not step.advance(StepStatus.FAILED)
        assert not step.advance(StepStatus.RUNNING)
        assert step.status == StepStatus.COMPLETED

    def test_pending_can_fail_directly(self) -> None:
        step = Step(id=1, name="validate")

        assert step.advance(StepStatus.FAILED)
        assert step.status.is_terminal

    def test_merge_ignores_different_plan(self) -> None:
        held = ExecutionPlan.model_validate(plan_payload("completed"))
        incoming = ExecutionPlan.model_validate(plan_payload("pending", plan_id="plan_2"))

        assert incoming.merge_from(held).steps[0].status == StepStatus.PENDING

    def test_mark_failed_keeps_completed_plan(self) -> None:
        plan = ExecutionPlan.model_validate(plan_payload("completed", plan_status="completed"))

        plan.mark_failed()

        assert plan.status == PlanStatus.COMPLETED
