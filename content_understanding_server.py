import itertools
from typing import Any, Dict, List, Optional

from aiohttp import web
from loguru import logger

JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9"


class ContentUnderstandingServer:
    """In-process stand-in for the Content Understanding REST API.

    Every submission creates an operation that walks through
    ``status_sequence`` one entry per status request; the last entry repeats.
    """

    def __init__(
        self,
        status_sequence: Optional[List[str]] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        page_size: int = 2,
    ):
        self.status_sequence = list(status_sequence or ["running", "succeeded"])
        self.result = result if result is not None else {
            "contents": [{"markdown": "# Invoice", "fields": {"Total": {"type": "number", "valueNumber": 42.5}}}]
        }
        self.error: Any = error or {"code": "InvalidRequest", "message": "The analyzer is not ready."}
        self.page_size = page_size
        self.omit_operation_location = False
        self.reject_status: Optional[int] = None
        self.poll_error_status: Optional[int] = None
        self.malformed_poll_body = False
        self.image_content_type = "image/jpeg"
        self.next_link_loops = False
        self.defaults: Dict[str, Any] = {"modelDeployments": {}}

        self.analyzers: Dict[str, Dict[str, Any]] = {}
        self.classifiers: Dict[str, Dict[str, Any]] = {}
        self.operations: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

        self.app = web.Application(middlewares=[self._record])
        self.app.router.add_put("/contentunderstanding/analyzers/{analyzer_id:[^/:]+}", self.handle_create_analyzer)
        self.app.router.add_get("/contentunderstanding/analyzers/{analyzer_id:[^/:]+}", self.handle_get_analyzer)
        self.app.router.add_delete("/contentunderstanding/analyzers/{analyzer_id:[^/:]+}", self.handle_delete_analyzer)
        self.app.router.add_post("/contentunderstanding/analyzers/{analyzer_id:[^/:]+}:analyze", self.handle_analyze)
        self.app.router.add_get("/contentunderstanding/analyzers", self.handle_list_analyzers)
        self.app.router.add_put("/contentunderstanding/classifiers/{classifier_id:[^/:]+}", self.handle_create_classifier)
        self.app.router.add_post("/contentunderstanding/classifiers/{classifier_id:[^/:]+}:classify", self.handle_classify)
        self.app.router.add_get("/contentunderstanding/operations/{operation_id}", self.handle_operation)
        self.app.router.add_get("/contentunderstanding/operations/{operation_id}/files/{image_id}", self.handle_image)
        self.app.router.add_get("/contentunderstanding/defaults", self.handle_get_defaults)
        self.app.router.add_patch("/contentunderstanding/defaults", self.handle_update_defaults)
        self.logger = logger
        self.runner: Optional[web.AppRunner] = None

    @web.middleware
    async def _record(self, request: web.Request, handler):
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "headers": dict(request.headers),
                "body": await request.read(),
            }
        )
        return await handler(request)

    def poll_count(self, operation_id: Optional[str] = None) -> int:
        if operation_id is not None:
            return self.operations[operation_id]["polls"]
        return sum(operation["polls"] for operation in self.operations.values())

    def _accept(self, request: web.Request, result: Any) -> web.Response:
        if self.reject_status is not None:
            self.logger.info(f"Rejecting {request.method} {request.path} with {self.reject_status}")
            return web.json_response(
                {"error": {"code": "InvalidRequest", "message": "Invalid analyzer schema."}},
                status=self.reject_status,
            )

        operation_id = f"op-{next(self._ids)}"
        self.operations[operation_id] = {"polls": 0, "result": result}
        headers = {"apim-request-id": f"req-{operation_id}"}
        if not self.omit_operation_location:
            base = str(request.url.origin())
            headers["Operation-Location"] = (
                f"{base}/contentunderstanding/operations/{operation_id}?api-version={request.query.get('api-version', '')}"
            )
        self.logger.info(f"Accepted {request.method} {request.path} as {operation_id}")
        return web.json_response({"id": operation_id, "status": "NotStarted"}, status=202, headers=headers)

    async def handle_create_analyzer(self, request: web.Request) -> web.Response:
        analyzer_id = request.match_info["analyzer_id"]
        template = await request.json()
        if self.reject_status is None:
            self.analyzers[analyzer_id] = dict(template, analyzerId=analyzer_id)
        return self._accept(request, {"analyzerId": analyzer_id, "status": "ready"})

    async def handle_get_analyzer(self, request: web.Request) -> web.Response:
        analyzer_id = request.match_info["analyzer_id"]
        if analyzer_id not in self.analyzers:
            return web.json_response({"error": {"code": "NotFound", "message": "Analyzer not found."}}, status=404)
        return web.json_response(self.analyzers[analyzer_id])

    async def handle_delete_analyzer(self, request: web.Request) -> web.Response:
        analyzer_id = request.match_info["analyzer_id"]
        if self.analyzers.pop(analyzer_id, None) is None:
            return web.json_response({"error": {"code": "NotFound", "message": "Analyzer not found."}}, status=404)
        return web.Response(status=204)

    async def handle_list_analyzers(self, request: web.Request) -> web.Response:
        skip = int(request.query.get("$skip", "0"))
        analyzers = list(self.analyzers.values())
        page = analyzers[skip:skip + self.page_size]
        body: Dict[str, Any] = {"value": page}
        if self.next_link_loops:
            body["nextLink"] = str(request.url)
        elif skip + self.page_size < len(analyzers):
            body["nextLink"] = str(request.url.update_query({"$skip": str(skip + self.page_size)}))
        return web.json_response(body)

    async def handle_analyze(self, request: web.Request) -> web.Response:
        return self._accept(request, self.result)

    async def handle_create_classifier(self, request: web.Request) -> web.Response:
        classifier_id = request.match_info["classifier_id"]
        self.classifiers[classifier_id] = await request.json()
        return self._accept(request, {"classifierId": classifier_id, "status": "ready"})

    async def handle_classify(self, request: web.Request) -> web.Response:
        return self._accept(request, self.result)

    async def handle_operation(self, request: web.Request) -> web.Response:
        operation = self.operations.get(request.match_info["operation_id"])
        if operation is None:
            return web.json_response({"error": {"code": "NotFound", "message": "Operation not found."}}, status=404)

        index = min(operation["polls"], len(self.status_sequence) - 1)
        operation["polls"] += 1

        if self.poll_error_status is not None:
            return web.json_response({"error": {"code": "InternalServerError"}}, status=self.poll_error_status)
        if self.malformed_poll_body:
            return web.Response(text="<html>gateway error</html>", content_type="text/html")

        status = self.status_sequence[index]
        body: Dict[str, Any] = {"id": request.match_info["operation_id"], "status": status}
        if status.lower() == "succeeded":
            body["result"] = operation["result"]
        elif status.lower() == "failed" and self.error is not None:
            body["error"] = self.error

        self.logger.info(f"Returning {status} status (poll {operation['polls']})")
        return web.json_response(body)

    async def handle_image(self, request: web.Request) -> web.Response:
        if request.match_info["operation_id"] not in self.operations:
            return web.json_response({"error": {"code": "NotFound", "message": "Operation not found."}}, status=404)
        return web.Response(body=JPEG_BYTES, content_type=self.image_content_type)

    async def handle_get_defaults(self, request: web.Request) -> web.Response:
        return web.json_response(self.defaults)

    async def handle_update_defaults(self, request: web.Request) -> web.Response:
        patch = await request.json()
        deployments = self.defaults["modelDeployments"]
        for model, deployment in patch.get("modelDeployments", {}).items():
            if deployment is None:
                deployments.pop(model, None)
            else:
                deployments[model] = deployment
        return web.json_response(self.defaults)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
