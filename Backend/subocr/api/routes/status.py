"""
Status Routes: WebSocket real-time job updates.
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging
import asyncio
import json

from subocr.services.task_manager import job_manager, JobStatus

logger = logging.getLogger(__name__)
router = APIRouter()

TERMINAL_STATUSES = (JobStatus.DONE.value, JobStatus.ERROR.value)


@router.websocket("/ws/jobs/{job_id}")
async def websocket_status(websocket: WebSocket, job_id: str):
    """
    Real-time job updates via WebSockets + Redis PubSub.
    """
    await websocket.accept()
    logger.info(f"WebSocket connected for job {job_id}")

    # Current snapshot first, so late subscribers never miss a terminal state
    job = await job_manager.get_job_async(job_id)
    if not job:
        await websocket.send_json({"job_id": job_id, "error": "Job not found"})
        await websocket.close()
        return
    await websocket.send_json(job.to_dict())
    if job.status.value in TERMINAL_STATUSES:
        await websocket.close()
        return

    try:
        from subocr.services.task_manager import redis_client
        if redis_client:
            pubsub = redis_client.pubsub()
            channel = f"job:{job_id}"
            pubsub.subscribe(channel)

            try:
                while True:
                    message = pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if message and message['type'] == 'message':
                        data = json.loads(message['data'])
                        await websocket.send_json(data)

                        # Close on terminal states
                        if data.get('status') in TERMINAL_STATUSES:
                            break

                    # Heartbeat
                    await asyncio.sleep(0.5)

            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected for job {job_id}")
                return
            finally:
                pubsub.unsubscribe(channel)
        else:
            # Fallback: Internal polling (no Redis)
            logger.info(f"WebSocket fallback to polling for job {job_id}")
            try:
                while True:
                    job = await job_manager.get_job_async(job_id)
                    if job:
                        await websocket.send_json({
                            "job_id": job_id,
                            "status": job.status.value,
                            "step": job.step.value,
                            "progress": job.progress,
                            "error": job.error,
                        })

                        if job.status.value in TERMINAL_STATUSES:
                            break

                    await asyncio.sleep(2)

            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected for job {job_id}")
                return

        await websocket.close()

    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        try:
            await websocket.close()
        except Exception:
            pass
