"""
Order Service - Saga

Saga パターン（オーケストレーション型）:
  前進アクションと補償アクションの組を順に実行する。
  途中で失敗したら、完了済みのステップを逆順に補償して整合性を保つ。

  ┌─────────────────────────────────────────────────────────┐
  │  1..n. Inventory Service に明細ごとの在庫引き当てを依頼  │
  │  n+1.  Payment Service に決済を依頼                       │
  │  n+2.  注文を確定                                         │
  │   └─ どこかで失敗 → 完了したステップを逆順に補償          │
  │        (引き当て解放、返金)                               │
  └─────────────────────────────────────────────────────────┘

失敗が ambiguous(相手側で処理されたか分からない)なら、失敗したステップ自身も
最初に補償する。補償の失敗は呼び出し元には返さず、ログに残して
リコンサイルに任せる。
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import OrderError

logger = logging.getLogger(__name__)


class SagaStep:
    def __init__(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        compensation: Callable[[Any], Awaitable[Any]] | None = None,
    ) -> None:
        self.name = name
        self.action = action
        self.compensation = compensation


class SagaFailed(Exception):
    def __init__(self, error: Exception, step: str, saga_log: list[dict]) -> None:
        super().__init__(f"{step}: {error}")
        self.error = error
        self.step = step
        self.saga_log = saga_log


class Saga:
    def __init__(self, name: str, saga_id: UUID, redis: aioredis.Redis) -> None:
        self.name = name
        self.saga_id = saga_id
        self.redis = redis
        self.steps: list[SagaStep] = []
        self.saga_log: list[dict] = []
        # ステップ名 → 前進アクションの結果。後続ステップから参照できる
        self.results: dict[str, Any] = {}

    def add_step(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        compensation: Callable[[Any], Awaitable[Any]] | None = None,
    ) -> "Saga":
        self.steps.append(SagaStep(name, action, compensation))
        return self

    async def execute(self) -> list[Any]:
        """
        ステップを順に実行し、各ステップの結果をリストで返す。
        失敗したら補償してから SagaFailed を投げる。
        """
        completed: list[tuple[SagaStep, Any]] = []

        for step in self.steps:
            entry = self._log(step.name, "EXECUTING")
            try:
                result = await step.action()
            except Exception as e:
                entry["status"] = "FAILED"
                entry["error"] = str(e)
                if not isinstance(e, OrderError) or e.ambiguous:
                    completed.append((step, None))
                logger.warning(
                    "Saga %s %s failed at %s: %s", self.name, self.saga_id, step.name, e
                )
                await self._compensate(completed)
                await self._publish("SagaCompensated")
                raise SagaFailed(e, step.name, self.saga_log) from e
            entry["status"] = "COMPLETED"
            self.results[step.name] = result
            completed.append((step, result))

        await self._publish("SagaCompleted")
        return [result for _, result in completed]

    async def _compensate(self, completed: list[tuple[SagaStep, Any]]) -> None:
        for step, result in reversed(completed):
            if step.compensation is None:
                continue
            entry = self._log(f"{step.name} (COMPENSATING)", "EXECUTING")
            try:
                await step.compensation(result)
                entry["status"] = "COMPLETED"
            except Exception as e:
                entry["status"] = "FAILED"
                entry["error"] = str(e)
                logger.exception(
                    "Compensation %s failed for saga %s; needs reconciliation",
                    step.name,
                    self.saga_id,
                )

    def _log(self, action: str, status: str) -> dict:
        entry = {
            "step": len(self.saga_log) + 1,
            "action": action,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.saga_log.append(entry)
        return entry

    async def _publish(self, event_type: str) -> None:
        """Saga のイベントを Redis に発行する。"""
        try:
            await self.redis.publish(
                "saga_events",
                json.dumps(
                    {
                        "event_type": event_type,
                        "saga": self.name,
                        "order_id": str(self.saga_id),
                        "saga_log": self.saga_log,
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish %s for saga %s", event_type, self.saga_id)
