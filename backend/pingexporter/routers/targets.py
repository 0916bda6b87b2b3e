"""
Target status API
Lists every probe session with its state so degraded targets are visible.
"""
from typing import List
from fastapi import APIRouter, Request

from pingexporter.schemas.target import TargetStatusResponse

router = APIRouter(prefix="/api/targets", tags=["Targets"])


@router.get("/", response_model=List[TargetStatusResponse])
async def list_targets(request: Request):
    dispatcher = request.app.state.dispatcher
    aggregator = request.app.state.aggregator
    result = []
    for session in dispatcher.sessions:
        target = session.target
        total, successful, wait_sum = aggregator.get(target).read()
        result.append(TargetStatusResponse(
            id=target.index,
            target=str(target.address),
            netns=target.netns,
            interface=target.interface,
            socket_kind=target.socket_kind,
            interval=target.interval,
            timeout=target.timeout,
            ttl=target.ttl,
            state=session.state.value,
            total=total,
            successful=successful,
            wait_sum_seconds=wait_sum,
        ))
    return result
