"""API route registration.

Aggregates all API routers into a single router
for inclusion in the main application.
"""

from fastapi import APIRouter

from matchday.api.routes.callbacks import router as callbacks_router
from matchday.api.routes.engine import router as engine_router
from matchday.api.routes.executions import router as executions_router
from matchday.api.routes.manifests import router as manifests_router
from matchday.api.routes.system import router as system_router
from matchday.api.routes.topics import router as topics_router
from matchday.api.routes.traces import router as traces_router
from matchday.api.routes.workflows import router as workflows_router

api_router = APIRouter()

api_router.include_router(system_router, tags=["System"])
# Callback ingestion is registered ahead of /workflows/{workflow_id}
api_router.include_router(callbacks_router)
api_router.include_router(workflows_router)
api_router.include_router(executions_router)
api_router.include_router(traces_router)
api_router.include_router(topics_router)
api_router.include_router(manifests_router)
api_router.include_router(engine_router)
