"""HTTP runner API over BotDeployService.

Routes are grouped per tenant and deployment under
``/servers/{server_id}/deployments/{deployment_id}``. When
``BOTHARBOR_RUNNER_REQUIRE_TOKEN`` is set every route except ``/health``
needs a matching ``X-Runner-Token`` header.

Service calls can block on process signalling and disk I/O, so
handlers run them through ``asyncio.to_thread`` and the event loop stays free
for log streams.

Usage:
    botharbor-api                  # BOTHARBOR_RUNNER_HOST / BOTHARBOR_RUNNER_PORT (8801)
    uvicorn --factory botharbor.runner_api:create_app
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.responses import StreamingResponse

from .config import load_config
from .errors import BotharborError, NotFoundError
from .logging_setup import setup_logging
from .logstore import LogLine
from .registry import Stage
from .service import BotDeployService

logger = logging.getLogger("botharbor.api")

_SETTLED = {Stage.RUNNING, Stage.STOPPED, Stage.ERROR}


class InputRequest(BaseModel):
    data: str


class FileWriteRequest(BaseModel):
    content: str


class RunnerApiSettings:
    def __init__(self):
        self.require_token = os.environ.get("BOTHARBOR_RUNNER_REQUIRE_TOKEN", "").lower() in {"1", "true", "yes"}
        self.token = os.environ.get("BOTHARBOR_RUNNER_TOKEN") or ""
        self.config_path = os.environ.get("BOTHARBOR_CONFIG") or None
        self.host = os.environ.get("BOTHARBOR_RUNNER_HOST", "0.0.0.0")
        self.port = int(os.environ.get("BOTHARBOR_RUNNER_PORT", "8801"))


def create_runner_api(
    *,
    service: BotDeployService,
    settings: RunnerApiSettings,
    shutdown_service: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if shutdown_service:
            await asyncio.to_thread(service.shutdown)

    app = FastAPI(title="botharbor-runner-api", lifespan=lifespan)

    def require_token(x_runner_token: Optional[str] = Header(default=None)) -> None:
        if not settings.require_token:
            return
        if not settings.token:
            raise HTTPException(status_code=500, detail="runner token not configured")
        if not x_runner_token or x_runner_token != settings.token:
            raise HTTPException(status_code=401, detail="unauthorized")

    @app.exception_handler(BotharborError)
    async def botharbor_error(request: Request, exc: BotharborError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def _snapshot(server_id: str, deployment_id: str) -> Dict[str, Any]:
        snap = service.get_state(server_id, deployment_id)
        if snap is None:
            raise NotFoundError(f"Deployment not found: {server_id}/{deployment_id}")
        return snap.to_dict()

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True}

    @app.post("/servers/{server_id}/deployments", dependencies=[Depends(require_token)])
    async def deploy(request: Request, server_id: str, file_name: str = "bot.zip", server_name: str = "") -> Dict[str, Any]:
        archive = await request.body()
        deployment_id = await asyncio.to_thread(service.deploy, archive, file_name, server_name, server_id)
        return {"deployment_id": deployment_id}

    @app.post("/servers/{server_id}/recover", dependencies=[Depends(require_token)])
    async def recover(server_id: str) -> Dict[str, Any]:
        snap = await asyncio.to_thread(service.recover_latest, server_id)
        return {"recovered": snap is not None, "state": snap.to_dict() if snap else None}

    @app.get("/servers/{server_id}/deployments/{deployment_id}", dependencies=[Depends(require_token)])
    async def get_state(server_id: str, deployment_id: str) -> Dict[str, Any]:
        return _snapshot(server_id, deployment_id)

    @app.get("/servers/{server_id}/deployments/{deployment_id}/logs", dependencies=[Depends(require_token)])
    async def get_logs(
        server_id: str,
        deployment_id: str,
        before_id: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        lines = await asyncio.to_thread(
            service.get_log_page, server_id, deployment_id, before_id=before_id, page_size=page_size
        )
        return {"logs": [line.to_dict() for line in lines]}

    @app.delete("/servers/{server_id}/deployments/{deployment_id}/logs", dependencies=[Depends(require_token)])
    async def clear_logs(server_id: str, deployment_id: str) -> Dict[str, Any]:
        await asyncio.to_thread(service.clear_logs, server_id, deployment_id)
        return {"ok": True}

    @app.get("/servers/{server_id}/deployments/{deployment_id}/logs/stream", dependencies=[Depends(require_token)])
    async def stream_logs(server_id: str, deployment_id: str, until_settled: bool = False) -> StreamingResponse:
        q: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        loop = asyncio.get_running_loop()

        def on_line(kind: str, line: LogLine) -> None:
            try:
                loop.call_soon_threadsafe(q.put_nowait, {"type": kind, "line": line.to_dict()})
            except RuntimeError:
                # Event loop already closed
                pass

        unsubscribe = service.subscribe_logs(server_id, deployment_id, on_line)

        async def stream():
            try:
                while True:
                    try:
                        item = await asyncio.wait_for(q.get(), timeout=0.5)
                    except asyncio.TimeoutError:
                        item = None
                    if item is not None:
                        yield (json.dumps(item, ensure_ascii=False) + "\n").encode("utf-8")
                        continue
                    if until_settled:
                        snap = service.get_state(server_id, deployment_id)
                        if snap is None or snap.stage in _SETTLED:
                            state = snap.to_dict() if snap else None
                            yield (json.dumps({"type": "state", "state": state}, ensure_ascii=False) + "\n").encode("utf-8")
                            break
            finally:
                unsubscribe()

        return StreamingResponse(
            stream(),
            media_type="application/x-ndjson",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.post("/servers/{server_id}/deployments/{deployment_id}/input", dependencies=[Depends(require_token)])
    async def write_input(server_id: str, deployment_id: str, req: InputRequest) -> Dict[str, Any]:
        await asyncio.to_thread(service.write_input, server_id, deployment_id, req.data)
        return {"ok": True}

    @app.post("/servers/{server_id}/deployments/{deployment_id}/stop", dependencies=[Depends(require_token)])
    async def stop(server_id: str, deployment_id: str) -> Dict[str, Any]:
        await asyncio.to_thread(service.stop, server_id, deployment_id)
        return _snapshot(server_id, deployment_id)

    @app.post("/servers/{server_id}/deployments/{deployment_id}/restart", dependencies=[Depends(require_token)])
    async def restart(server_id: str, deployment_id: str) -> Dict[str, Any]:
        await asyncio.to_thread(service.restart, server_id, deployment_id)
        return _snapshot(server_id, deployment_id)

    @app.post("/servers/{server_id}/deployments/{deployment_id}/complete-stop", dependencies=[Depends(require_token)])
    async def complete_stop(server_id: str, deployment_id: str) -> Dict[str, Any]:
        await asyncio.to_thread(service.complete_stop, server_id, deployment_id)
        return {"ok": True}

    @app.post("/servers/{server_id}/deployments/{deployment_id}/reset", dependencies=[Depends(require_token)])
    async def reset(server_id: str, deployment_id: str) -> Dict[str, Any]:
        await asyncio.to_thread(service.reset, server_id, deployment_id)
        return {"ok": True}

    @app.get("/servers/{server_id}/deployments/{deployment_id}/files", dependencies=[Depends(require_token)])
    async def list_files(server_id: str, deployment_id: str, path: str = "") -> Dict[str, Any]:
        files = await asyncio.to_thread(service.list_files, server_id, deployment_id, path)
        return {"files": files}

    @app.get("/servers/{server_id}/deployments/{deployment_id}/file", dependencies=[Depends(require_token)])
    async def read_file(server_id: str, deployment_id: str, path: str) -> Dict[str, Any]:
        content = await asyncio.to_thread(service.read_file, server_id, deployment_id, path)
        return {"path": path, "content": content}

    @app.put("/servers/{server_id}/deployments/{deployment_id}/file", dependencies=[Depends(require_token)])
    async def write_file(server_id: str, deployment_id: str, path: str, body: FileWriteRequest) -> Dict[str, Any]:
        await asyncio.to_thread(service.write_file, server_id, deployment_id, path, body.content)
        return {"ok": True}

    @app.post("/servers/{server_id}/deployments/{deployment_id}/file", dependencies=[Depends(require_token)])
    async def create_file(server_id: str, deployment_id: str, path: str) -> Dict[str, Any]:
        return await asyncio.to_thread(service.create_file, server_id, deployment_id, path)

    @app.delete("/servers/{server_id}/deployments/{deployment_id}/file", dependencies=[Depends(require_token)])
    async def delete_file(server_id: str, deployment_id: str, path: str) -> Dict[str, Any]:
        await asyncio.to_thread(service.delete_file, server_id, deployment_id, path)
        return {"ok": True}

    return app


def create_app() -> FastAPI:
    settings = RunnerApiSettings()
    config = load_config(settings.config_path)
    setup_logging()
    service = BotDeployService(config)
    return create_runner_api(service=service, settings=settings)


def main() -> None:
    import uvicorn

    settings = RunnerApiSettings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port)
