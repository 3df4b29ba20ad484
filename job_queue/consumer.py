"""
Queue workers.

``PipelineConsumer`` runs ``concurrency`` worker tasks that receive from the
events queue and hand each message to the pipeline, plus one task that
returns due redeliveries from the delayed queue.

    ingest / API ──send──▶ events ──receive──▶ worker ──▶ Pipeline.handle_job
                             ▲                    │
                             │ promote            │ handler raised
                          delayed ◀── retryable ──┤
                                                  └── exhausted / permanent ──▶ dlq
"""
from __future__ import annotations

import asyncio
import structlog

from job_queue.message_queue import MessageQueue, QueueJob, Queues, RedisMessageQueue

logger = structlog.get_logger()


class PipelineConsumer:

    def __init__(
        self,
        pipeline,  # core.pipeline.Pipeline; untyped to avoid a circular import
        queue: MessageQueue,
        concurrency: int = 5,
        poll_wait: float = 2.0,
        promote_interval: float = 5.0,
    ):
        self.pipeline = pipeline
        self.queue = queue
        self.concurrency = concurrency
        self.poll_wait = poll_wait
        self.promote_interval = promote_interval
        self._tasks: list[asyncio.Task] = []

    async def start_background(self) -> list[asyncio.Task]:
        if isinstance(self.queue, RedisMessageQueue):
            await self.queue.requeue_inflight(Queues.EVENTS)
        self._tasks = [
            asyncio.create_task(self._work(n), name=f"pager-worker-{n}")
            for n in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._promote(), name="pager-promoter"))
        logger.info("pipeline_consumer_started", workers=self.concurrency)
        return self._tasks

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("pipeline_consumer_stopped")

    async def handle_job(self, job: QueueJob) -> None:
        """Pipeline entry for one received message; errors reach the queue."""
        log = logger.bind(job_id=job.job_id, action=job.action, receive_count=job.receive_count)
        try:
            await self.pipeline.handle_job(job)
        except Exception as e:
            log.error("message_processing_failed", error=str(e),
                      retryable=getattr(e, "retryable", True))
            raise
        log.info("message_processed")

    async def _work(self, n: int) -> None:
        while True:
            try:
                job = await self.queue.receive(Queues.EVENTS, wait=self.poll_wait)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("queue_receive_failed", worker=n, error=str(e))
                await asyncio.sleep(1)
                continue
            if job is not None:
                await self.queue.deliver(Queues.EVENTS, job, self.handle_job)

    async def _promote(self) -> None:
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("delayed_promotion_failed", error=str(e))
            await asyncio.sleep(self.promote_interval)
