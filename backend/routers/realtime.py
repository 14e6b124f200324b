"""
Router temps réel : WebSocket /ws/{table}?token=...

Un fermier n'est abonné qu'à ses propres lignes (filtre imposé côté serveur) ;
le staff peut tout suivre ou filtrer via ?column=&value=.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder

from core.dependencies import is_staff, user_from_token
from core.realtime import hub

logger = logging.getLogger(__name__)
router = APIRouter()

# Colonnes "propriétaire" par table ; la première est le filtre par défaut
OWNER_COLUMNS: dict[str, list[str]] = {
    "notifications":    ["recipient_id"],
    "waste_reports":    ["farmer_id"],
    "orders":           ["customer_id"],
    "payments":         ["farmer_id", "customer_id"],
    "tickets":          ["user_id"],
    "ticket_responses": ["ticket_owner_id"],
}
STAFF_ONLY_TABLES = {"riders", "inventory"}
QUEUE_SIZE = 100


def resolve_filter(user: dict, table: str, column: Optional[str], value: Optional[str]) -> dict:
    """Lève PermissionError si l'utilisateur ne peut pas suivre cette table."""
    if table not in OWNER_COLUMNS and table not in STAFF_ONLY_TABLES:
        raise PermissionError(f"Unknown table {table}")
    if is_staff(user):
        return {column: value} if column and value else {}
    if table in STAFF_ONLY_TABLES:
        raise PermissionError(f"Table {table} is restricted to staff")
    allowed = OWNER_COLUMNS[table]
    owner_column = column if column in allowed else allowed[0]
    return {owner_column: user["user_id"]}


@router.websocket("/ws/{table}")
async def subscribe(
    websocket: WebSocket,
    table: str,
    token: Optional[str] = Query(None),
    column: Optional[str] = Query(None),
    value: Optional[str] = Query(None),
):
    try:
        user = await user_from_token(token)
        row_filter = resolve_filter(user, table, column, value)
    except (HTTPException, PermissionError) as e:
        logger.info(f"WebSocket {table} refusé : {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)

    async def on_event(event: dict) -> None:
        # QueueFull remonte au hub, qui journalise et passe au suivant
        queue.put_nowait(event)

    handle = hub.subscribe(table, on_event, row_filter)
    await websocket.send_json({"type": "subscribed", "table": table, "filter": row_filter})

    async def pump() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(jsonable_encoder(event))

    sender = asyncio.create_task(pump())
    try:
        while True:
            # Le client peut envoyer des pings ; sert surtout à détecter la déconnexion
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        hub.unsubscribe(handle)
        logger.debug(f"WebSocket {table} fermé ({handle})")
