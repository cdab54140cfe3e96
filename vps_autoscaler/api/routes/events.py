from typing import List, Optional

from fastapi import APIRouter, Depends

from vps_autoscaler.api.container import get_container
from vps_autoscaler.api.schemas.nodegroup import EventResponse

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/", response_model=List[EventResponse])
def list_events(limit: int = 100, object_name: Optional[str] = None, container=Depends(get_container)):
    events = container.events.recent(limit=limit, object_name=object_name)
    return [
        EventResponse(
            reason=e.reason,
            type=e.event_type,
            object_kind=e.object_kind,
            object_name=e.object_name,
            message=e.message,
            timestamp=e.timestamp,
        )
        for e in reversed(events)
    ]
