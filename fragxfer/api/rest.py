"""
Storage Node Control API

HTTP surface for inspecting and pruning a node's fragment store. Fragment
bytes never travel over HTTP: uploads and downloads use the TCP transfer
protocol.

Routes:
- GET    /                         name, version, running flag
- GET    /status                   node and store statistics
- GET    /fragments                every stored fragment with its size
- GET    /fragments/{fingerprint}  one fragment, 404 if absent
- DELETE /fragments/{fingerprint}  remove one fragment, 404 if absent

Errors are HTTP status codes with a JSON `detail`; a malformed fingerprint
is a 400, and a missing node is a 503.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..integrity.fingerprint import Fingerprint

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# === Pydantic Models ===

class NodeStatus(BaseModel):
    """Body of GET /status."""
    running: bool
    host: str
    port: int
    stored_fragments: int
    stored_bytes: int
    capacity: Optional[int] = None
    fragments_received: int
    fragments_served: int
    bytes_received: int
    bytes_served: int


class FragmentInfo(BaseModel):
    """A stored fragment."""
    fingerprint: str
    size: int


# === API Creation ===

def create_app(node=None) -> FastAPI:
    """
    Build the control API around a storage node.

    Args:
        node: StorageNode instance to expose

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Log the server lifecycle."""
        logger.info("Control API started")
        yield
        logger.info("Control API shut down")

    app = FastAPI(
        title="fragxfer Storage Node API",
        description="Control API for a fragxfer storage node",
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_node():
        if node is None:
            raise HTTPException(status_code=503, detail="Node not initialized")
        return node

    def parse_fingerprint(value: str) -> Fingerprint:
        try:
            return Fingerprint.from_hex(value)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid fingerprint: {value}")

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """Name, version and whether the node is serving."""
        return {
            "name": "fragxfer storage node",
            "version": API_VERSION,
            "status": "running" if node and node.is_running else "not running",
        }

    @app.get("/status", response_model=NodeStatus, tags=["Node"])
    async def get_status():
        """Get node status."""
        stats = await require_node().get_stats()
        return NodeStatus(**stats)

    @app.get("/fragments", response_model=List[FragmentInfo], tags=["Fragments"])
    async def list_fragments():
        """List stored fragments."""
        store = require_node().store
        fragments = []
        for fingerprint in store.list_fingerprints():
            size = await store.size(fingerprint)
            if size is not None:
                fragments.append(FragmentInfo(fingerprint=fingerprint.hex, size=size))
        return fragments

    @app.get("/fragments/{fingerprint}", response_model=FragmentInfo, tags=["Fragments"])
    async def get_fragment_info(fingerprint: str):
        """Get information about a stored fragment."""
        store = require_node().store
        fp = parse_fingerprint(fingerprint)

        size = await store.size(fp)
        if size is None:
            raise HTTPException(status_code=404, detail="Fragment not found")
        return FragmentInfo(fingerprint=fp.hex, size=size)

    @app.delete("/fragments/{fingerprint}", tags=["Fragments"])
    async def delete_fragment(fingerprint: str):
        """Delete a stored fragment."""
        store = require_node().store
        fp = parse_fingerprint(fingerprint)

        if not await store.delete(fp):
            raise HTTPException(status_code=404, detail="Fragment not found")
        logger.info(f"Deleted fragment {fp.short()}")
        return {"success": True}

    return app


async def run_api_server(node, host: str = "0.0.0.0", port: int = 8080):
    """
    Run the API server.

    Args:
        node: StorageNode instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(node)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
