"""
Trace store: persists runs, turns and tool executions as they happen.

Tool executions are logged the moment a tool returns, before the turn that
made the call has been appended. Such executions hang off a provisional
turn placeholder until ``append_turn`` finalizes that turn number and the
reconcile step moves them onto the finalized turn.
"""

import asyncio
from collections import defaultdict

import structlog
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import RunNotFoundError, ValidationError
from ..llm.base import TokenUsage
from ..llm.factory import split_model_id
from ..models import (
    ModelPricing,
    Run,
    RunStatus,
    ToolExecution,
    Turn,
    TurnState,
    utcnow,
)
from ..tools.base import ToolResult
from .pricing import PricingSource
from .records import (
    PricingInfo,
    RunCost,
    RunQuery,
    RunRecord,
    ToolExecutionRecord,
    ToolStats,
    TurnRecord,
)

logger = structlog.get_logger()

TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.ERROR}


class TraceStore:
    """SQLAlchemy-backed run/turn/tool-execution log."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        pricing_source: PricingSource | None = None,
    ):
        self._session_maker = session_maker
        self._pricing_source = pricing_source
        self._run_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # Runs

    async def create_run(
        self,
        agent_id: str,
        model_used: str,
        model_settings: dict | None = None,
        prompt_version: int = 1,
    ) -> RunRecord:
        async with self._session_maker() as db:
            run = Run(
                agent_id=agent_id,
                model_used=model_used,
                status=RunStatus.RUNNING.value,
                model_settings=model_settings,
                prompt_version=prompt_version,
            )
            db.add(run)
            await db.commit()

        logger.info("Run created", run_id=run.id, agent_id=agent_id, model=model_used)
        return self._to_run_record(run, [], [])

    async def update_run_status(
        self, run_id: str, status: RunStatus | str, error: str | None = None
    ) -> None:
        try:
            status = RunStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid run status: {status}", "status")

        async with self._run_locks[run_id], self._session_maker() as db:
            run = await self._load_run(db, run_id)
            current = RunStatus(run.status)

            if current in TERMINAL_STATUSES and status != current:
                raise ValidationError(
                    f"Run {run_id} is already {current.value}, cannot become {status.value}",
                    "status",
                )

            run.status = status.value
            if error is not None:
                run.error = error
            if status in TERMINAL_STATUSES:
                run.completed_at = utcnow()
                run.total_duration_ms = int(
                    (run.completed_at - run.created_at).total_seconds() * 1000
                )

            await db.commit()

        if status in TERMINAL_STATUSES:
            # Later writes to a finished run recreate the lock on demand
            self._run_locks.pop(run_id, None)

        logger.info("Run status updated", run_id=run_id, status=status.value)

    async def set_run_version(self, run_id: str, prompt_version: int, agent_version: str) -> None:
        async with self._run_locks[run_id], self._session_maker() as db:
            run = await self._load_run(db, run_id)
            run.prompt_version = prompt_version
            run.agent_version = agent_version
            await db.commit()

    async def get_run(self, run_id: str) -> RunRecord | None:
        async with self._session_maker() as db:
            run = await db.get(Run, run_id)
            if run is None:
                return None
            return await self._assemble(db, run)

    async def query_runs(self, query: RunQuery | None = None) -> list[RunRecord]:
        query = query or RunQuery()
        stmt = select(Run)

        if query.agent_id:
            stmt = stmt.where(Run.agent_id == query.agent_id)
        if query.status:
            stmt = stmt.where(Run.status == RunStatus(query.status).value)
        if query.from_date:
            stmt = stmt.where(Run.created_at >= query.from_date)
        if query.to_date:
            stmt = stmt.where(Run.created_at <= query.to_date)

        stmt = stmt.order_by(Run.created_at.desc()).limit(query.limit).offset(query.offset)

        async with self._session_maker() as db:
            runs = (await db.execute(stmt)).scalars().all()
            return [await self._assemble(db, run) for run in runs]

    async def count_runs(self, agent_id: str, status: RunStatus | None = None) -> int:
        stmt = select(func.count()).select_from(Run).where(Run.agent_id == agent_id)
        if status:
            stmt = stmt.where(Run.status == status.value)
        async with self._session_maker() as db:
            return (await db.execute(stmt)).scalar_one()

    async def delete_run(self, run_id: str) -> None:
        async with self._run_locks[run_id], self._session_maker() as db:
            await self._load_run(db, run_id)
            await db.execute(delete(ToolExecution).where(ToolExecution.run_id == run_id))
            await db.execute(delete(Turn).where(Turn.run_id == run_id))
            await db.execute(delete(Run).where(Run.id == run_id))
            await db.commit()

        self._run_locks.pop(run_id, None)
        logger.info("Run deleted", run_id=run_id)

    # Turns and tool executions

    async def log_tool_execution(
        self,
        run_id: str,
        execution: ToolExecutionRecord,
        turn_number: int | None = None,
    ) -> str:
        """Persist one execution immediately; returns the turn id it hangs off."""
        async with self._run_locks[run_id], self._session_maker() as db:
            run = await self._load_run(db, run_id)

            if turn_number is None:
                turn_number = await self._last_finalized_number(db, run_id) + 1

            turn = await self._find_turn(db, run_id, turn_number, TurnState.FINALIZED)
            if turn is None:
                turn = await self._find_turn(db, run_id, turn_number, TurnState.PROVISIONAL)
            if turn is None:
                turn = Turn(
                    run_id=run_id,
                    turn_number=turn_number,
                    state=TurnState.PROVISIONAL.value,
                )
                db.add(turn)
                await db.flush()
                logger.debug("Provisional turn created", run_id=run_id, turn_number=turn_number)

            db.add(self._to_execution_row(run_id, turn.id, execution))
            run.total_tool_calls += 1
            await db.commit()

        execution.turn_id = turn.id
        return turn.id

    async def append_turn(self, run_id: str, turn: TurnRecord) -> str:
        """Finalize a turn and fold its usage into the run aggregates."""
        async with self._run_locks[run_id], self._session_maker() as db:
            run = await self._load_run(db, run_id)

            expected = await self._last_finalized_number(db, run_id) + 1
            if turn.turn_number != expected:
                raise ValidationError(
                    f"Run {run_id} expects turn {expected}, got {turn.turn_number}",
                    "turn_number",
                )

            row = Turn(
                run_id=run_id,
                turn_number=turn.turn_number,
                state=TurnState.FINALIZED.value,
                user_message=turn.user_message,
                assistant_message=turn.assistant_message,
                input_tokens=turn.usage.input_tokens,
                output_tokens=turn.usage.output_tokens,
                total_tokens=turn.usage.total_tokens,
                started_at=turn.started_at,
                duration_ms=turn.duration_ms,
                timestamp=turn.timestamp,
            )
            db.add(row)
            await db.flush()

            logged_ids = await self.reconcile(db, run_id, turn.turn_number, row.id)

            for execution in turn.tool_executions:
                if execution.id in logged_ids:
                    continue
                db.add(self._to_execution_row(run_id, row.id, execution))
                run.total_tool_calls += 1

            run.total_input_tokens += turn.usage.input_tokens
            run.total_output_tokens += turn.usage.output_tokens
            run.total_tokens += turn.usage.total_tokens

            await db.commit()

        turn.id = row.id
        turn.state = TurnState.FINALIZED
        for execution in turn.tool_executions:
            execution.turn_id = row.id
        return row.id

    async def reconcile(
        self, db: AsyncSession, run_id: str, turn_number: int, final_turn_id: str
    ) -> set[str]:
        """Move executions from provisional placeholders onto the finalized turn.

        Returns the tool call ids that were already logged for this turn.
        """
        placeholder_ids = (await db.execute(
            select(Turn.id).where(
                Turn.run_id == run_id,
                Turn.turn_number == turn_number,
                Turn.state == TurnState.PROVISIONAL.value,
            )
        )).scalars().all()

        if not placeholder_ids:
            return set()

        await db.execute(
            update(ToolExecution)
            .where(ToolExecution.turn_id.in_(placeholder_ids))
            .values(turn_id=final_turn_id)
        )
        await db.execute(delete(Turn).where(Turn.id.in_(placeholder_ids)))

        logged = (await db.execute(
            select(ToolExecution.tool_call_id).where(ToolExecution.turn_id == final_turn_id)
        )).scalars().all()

        logger.debug(
            "Provisional turn reconciled",
            run_id=run_id,
            turn_number=turn_number,
            executions=len(logged),
        )
        return set(logged)

    # Statistics and cost

    async def get_tool_stats(self, agent_id: str) -> list[ToolStats]:
        stmt = (
            select(
                ToolExecution.tool_name,
                func.count(ToolExecution.id),
                func.sum(case((ToolExecution.success.is_(True), 1), else_=0)),
                func.avg(ToolExecution.execution_time_ms),
            )
            .join(Run, Run.id == ToolExecution.run_id)
            .where(Run.agent_id == agent_id)
            .group_by(ToolExecution.tool_name)
            .order_by(ToolExecution.tool_name)
        )

        async with self._session_maker() as db:
            rows = (await db.execute(stmt)).all()

        return [
            ToolStats(
                tool_name=name,
                total_executions=total,
                successful_executions=int(successes or 0),
                avg_execution_time_ms=float(avg_time or 0.0),
            )
            for name, total, successes, avg_time in rows
        ]

    async def get_model_pricing(
        self, model_id: str, provider: str, force_update: bool = False
    ) -> PricingInfo | None:
        if provider == "ollama":
            return PricingInfo(model_id, provider, 0.0, 0.0)

        async with self._session_maker() as db:
            cached = await self._find_pricing(db, model_id, provider)
            if cached is not None and not force_update:
                return self._to_pricing_info(cached)

            quote = None
            if self._pricing_source is not None:
                quote = await self._pricing_source.fetch(model_id, provider)

            if quote is None:
                return self._to_pricing_info(cached) if cached is not None else None

            if cached is None:
                cached = ModelPricing(model_id=model_id, provider=provider)
                db.add(cached)
            cached.input_price_per_1k, cached.output_price_per_1k = quote
            cached.last_updated = utcnow()
            await db.commit()

            logger.info("Model pricing updated", model_id=model_id, provider=provider)
            return self._to_pricing_info(cached)

    async def set_model_pricing(
        self, model_id: str, provider: str, input_price_per_1k: float, output_price_per_1k: float
    ) -> PricingInfo:
        """Record prices by hand, for providers without a pricing catalog."""
        async with self._session_maker() as db:
            pricing = await self._find_pricing(db, model_id, provider)
            if pricing is None:
                pricing = ModelPricing(model_id=model_id, provider=provider)
                db.add(pricing)
            pricing.input_price_per_1k = input_price_per_1k
            pricing.output_price_per_1k = output_price_per_1k
            pricing.last_updated = utcnow()
            await db.commit()
            return self._to_pricing_info(pricing)

    async def calculate_run_cost(self, run_id: str) -> RunCost | None:
        async with self._session_maker() as db:
            run = await self._load_run(db, run_id)

        try:
            provider, model_id = split_model_id(run.model_used)
        except ValidationError:
            logger.warning("Cannot price run with malformed model id", run_id=run_id, model=run.model_used)
            return None

        pricing = await self.get_model_pricing(model_id, provider)
        if pricing is None:
            return None

        return RunCost(
            run_id=run_id,
            model_id=model_id,
            provider=provider,
            input_tokens=run.total_input_tokens,
            output_tokens=run.total_output_tokens,
            input_cost=run.total_input_tokens / 1000 * pricing.input_price_per_1k,
            output_cost=run.total_output_tokens / 1000 * pricing.output_price_per_1k,
        )

    # Helpers

    async def _load_run(self, db: AsyncSession, run_id: str) -> Run:
        run = await db.get(Run, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def _last_finalized_number(self, db: AsyncSession, run_id: str) -> int:
        result = await db.execute(
            select(func.max(Turn.turn_number)).where(
                Turn.run_id == run_id,
                Turn.state == TurnState.FINALIZED.value,
            )
        )
        return result.scalar_one_or_none() or 0

    async def _find_turn(
        self, db: AsyncSession, run_id: str, turn_number: int, state: TurnState
    ) -> Turn | None:
        result = await db.execute(
            select(Turn).where(
                Turn.run_id == run_id,
                Turn.turn_number == turn_number,
                Turn.state == state.value,
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def _find_pricing(self, db: AsyncSession, model_id: str, provider: str) -> ModelPricing | None:
        result = await db.execute(
            select(ModelPricing).where(
                ModelPricing.model_id == model_id,
                ModelPricing.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    async def _assemble(self, db: AsyncSession, run: Run) -> RunRecord:
        turns = (await db.execute(
            select(Turn).where(Turn.run_id == run.id).order_by(Turn.turn_number, Turn.timestamp)
        )).scalars().all()
        executions = (await db.execute(
            select(ToolExecution).where(ToolExecution.run_id == run.id).order_by(ToolExecution.timestamp)
        )).scalars().all()
        return self._to_run_record(run, turns, executions)

    def _to_execution_row(self, run_id: str, turn_id: str, execution: ToolExecutionRecord) -> ToolExecution:
        return ToolExecution(
            run_id=run_id,
            turn_id=turn_id,
            tool_call_id=execution.id,
            tool_name=execution.tool_name,
            parameters=execution.parameters,
            success=execution.result.success,
            output=execution.result.output or "",
            data=execution.result.data,
            error=execution.result.error,
            execution_time_ms=execution.result.execution_time_ms,
            timestamp=execution.timestamp,
        )

    def _to_run_record(
        self,
        run: Run,
        turns: list[Turn],
        executions: list[ToolExecution],
    ) -> RunRecord:
        by_turn: dict[str, list[ToolExecutionRecord]] = defaultdict(list)
        for row in executions:
            by_turn[row.turn_id].append(ToolExecutionRecord(
                id=row.tool_call_id,
                tool_name=row.tool_name,
                parameters=row.parameters or {},
                result=ToolResult(
                    success=row.success,
                    output=row.output,
                    data=row.data,
                    error=row.error,
                    execution_time_ms=row.execution_time_ms,
                ),
                timestamp=row.timestamp,
                turn_id=row.turn_id,
            ))

        return RunRecord(
            id=run.id,
            agent_id=run.agent_id,
            model_used=run.model_used,
            status=RunStatus(run.status),
            turns=[
                TurnRecord(
                    id=turn.id,
                    turn_number=turn.turn_number,
                    user_message=turn.user_message,
                    assistant_message=turn.assistant_message,
                    tool_executions=by_turn.get(turn.id, []),
                    usage=TokenUsage(turn.input_tokens, turn.output_tokens),
                    started_at=turn.started_at,
                    duration_ms=turn.duration_ms,
                    timestamp=turn.timestamp,
                    state=TurnState(turn.state),
                )
                for turn in turns
            ],
            total_usage=TokenUsage(run.total_input_tokens, run.total_output_tokens),
            total_tool_calls=run.total_tool_calls,
            model_settings=run.model_settings,
            prompt_version=run.prompt_version,
            agent_version=run.agent_version,
            created_at=run.created_at,
            completed_at=run.completed_at,
            total_duration_ms=run.total_duration_ms,
            error=run.error,
        )

    def _to_pricing_info(self, row: ModelPricing) -> PricingInfo:
        return PricingInfo(
            model_id=row.model_id,
            provider=row.provider,
            input_price_per_1k=row.input_price_per_1k,
            output_price_per_1k=row.output_price_per_1k,
            last_updated=row.last_updated,
        )
