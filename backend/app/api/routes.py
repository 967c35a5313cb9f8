# Add routes here
from fastapi import APIRouter
from .v1 import graph, runs

api_router = APIRouter(prefix="/api", tags=["workflow-engine"])

api_router.include_router(graph.router, prefix="/v1", tags=["graph"])
api_router.include_router(runs.router, prefix="/v1", tags=["runs"])


@api_router.get("/")
def read_root():
    return {"message": "Workflow engine is running"}
