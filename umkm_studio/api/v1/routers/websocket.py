"""WebSocket endpoint for realtime job status updates.

Clients connect with their access token in the query string and receive a
JobStatusUpdate snapshot immediately, then every subsequent update, until
the job reaches a terminal state.

Usage:
    ws://localhost:8000/api/v1/ws/jobs/{job_id}?token={jwt_token}
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from umkm_studio.core.database import get_session_factory
from umkm_studio.core.pubsub import subscribe
from umkm_studio.models.generation_job import JobStatus
from umkm_studio.schemas.generation_job import JobStatusUpdate
from umkm_studio.services.auth_service import AuthService, InvalidTokenError
from umkm_studio.services.job_queue import JobQueueService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["websocket"])

TERMINAL_STATUSES = {JobStatus.COMPLETED.value, JobStatus.FAILED.value}


async def _reject(websocket: WebSocket, code: int, error_code: str, message: str) -> None:
    # Accept connection just to send error, then close
    await websocket.accept()
    await websocket.send_json({"type": "error", "error_code": error_code, "message": message})
    await websocket.close(code=code, reason=message)


async def handle_client_messages(websocket: WebSocket) -> None:
    """Answer client pings until the client disconnects."""
    while True:
        message = await websocket.receive_json()
        if isinstance(message, dict) and message.get("type") == "ping":
            await websocket.send_json({"type": "pong"})


async def forward_updates(websocket: WebSocket, job_id: int) -> None:
    """Forward pub/sub updates until the job is terminal."""
    async for message in subscribe(job_id):
        if message is None:
            continue
        await websocket.send_json({"type": "status", **message})
        if message.get("status") in TERMINAL_STATUSES:
            return


@router.websocket("/jobs/{job_id}")
async def websocket_job_status(
    websocket: WebSocket,
    job_id: int,
    token: Optional[str] = Query(None, description="JWT authentication token"),
):
    """Stream status updates for one of the caller's jobs."""
    session_factory = get_session_factory()

    async with session_factory() as db:
        if not token:
            await _reject(websocket, 4001, "AUTH_FAILED", "Missing authentication token")
            return
        try:
            account = await AuthService(db).validate_access_token(token)
        except InvalidTokenError:
            await _reject(websocket, 4001, "AUTH_FAILED", "Invalid or expired token")
            return

        job = await JobQueueService(db).get_job(job_id, account.id)
        if job is None:
            await _reject(websocket, 4003, "ACCESS_DENIED", "Job not found or access denied")
            return

        snapshot = JobStatusUpdate(
            job_id=job.id,
            status=job.status,
            result=job.result if job.status == JobStatus.COMPLETED else None,
            error=job.error_msg,
            error_code=job.error_code,
            credit_refunded=job.credit_refunded,
        )

    await websocket.accept()
    await websocket.send_json({"type": "status", **snapshot.model_dump(mode="json")})

    if snapshot.status.value in TERMINAL_STATUSES:
        await websocket.close()
        return

    receive_task = asyncio.create_task(handle_client_messages(websocket))
    updates_task = asyncio.create_task(forward_updates(websocket, job_id))

    try:
        done, pending = await asyncio.wait(
            [receive_task, updates_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, WebSocketDisconnect):
                pass

        if updates_task in done and updates_task.exception() is None:
            await websocket.close()

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for job {job_id}")
