from fastapi import Depends, FastAPI, HTTPException

from vps_autoscaler.api.container import get_container
from vps_autoscaler.api.routes.events import router as events_router
from vps_autoscaler.api.routes.nodegroups import router as nodegroups_router

app = FastAPI(title="VPS Autoscaler API")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/readyz")
def readyz(container=Depends(get_container)):
    """200 on the leader (or with leader election disabled), 503 on a standby."""
    leader = container.manager.is_leader()
    identity = container.elector.identity if container.elector else None
    if not leader:
        raise HTTPException(status_code=503, detail={"leader": False, "identity": identity})
    return {"status": "ready", "leader": True, "identity": identity}


app.include_router(nodegroups_router)
app.include_router(events_router)
