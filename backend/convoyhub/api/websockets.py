import logging
import uuid

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from convoyhub.api.deps import get_convoy_service
from convoyhub.core.errors import ConvoyError, ForbiddenError, NotFoundError
from convoyhub.core.security import decode_access_token
from convoyhub.core.socket_manager import manager
from convoyhub.services.convoys import ConvoyService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/{convoy_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    convoy_id: uuid.UUID,
    token: str = Query(...),
    service: ConvoyService = Depends(get_convoy_service),
):
    user_id = decode_access_token(token)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        convoy = await service.get(convoy_id, viewer_id=user_id)
    except ConvoyError as e:
        logger.info("Rejecting socket for user %s on convoy %s: %s", user_id, convoy_id, e.code)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if user_id not in convoy.member_ids():
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    key = str(convoy_id)
    await manager.connect(key, websocket)

    try:
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "error": {"code": "VALIDATION_ERROR", "message": "Expected an object"}})
                continue
            try:
                center = await service.update_location(
                    convoy_id,
                    user_id,
                    data.get("lat"),
                    data.get("lng"),
                    heading=data.get("heading"),
                    speed=data.get("speed"),
                    accuracy=data.get("accuracy"),
                )
            except (ForbiddenError, NotFoundError) as e:
                # Removed from the convoy, or the convoy is gone
                await websocket.send_json({"type": "error", "error": e.to_dict()})
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                break
            except ConvoyError as e:
                await websocket.send_json({"type": "error", "error": e.to_dict()})
                continue

            await manager.broadcast_location(key, user_id, center)
    except WebSocketDisconnect:
        logger.debug("User %s disconnected from convoy %s", user_id, key)
    finally:
        manager.disconnect(key, websocket)
