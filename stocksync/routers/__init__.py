"""
routers/ — FastAPI route modules.

Each file contains a thin APIRouter. All sync logic lives in
stocksync.sync. Routers validate input, call the orchestrator,
and return responses.
"""
