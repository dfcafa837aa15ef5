import asyncio
import base64
import inspect
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional

import aiohttp
from loguru import logger

from content_understanding_client.decoder import decode
from content_understanding_client.errors import (
    AuthError,
    InvalidContentTypeError,
    MalformedResponseError,
    OperationFailedError,
    OperationTimeoutError,
    ProtocolError,
    TransportError,
    ValidationError,
)
from content_understanding_client.models import (
    AnalyzerListResponse,
    ClientSettings,
    OperationError,
    OperationHandle,
    OperationStatus,
    PollingConfig,
    ResultDocument,
    StatusResponse,
)

StatusCallback = Callable[[StatusResponse], Any]


class _RawResponse(NamedTuple):
    status: int
    headers: Mapping[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class ContentUnderstandingClient:
    OPERATION_LOCATION = "Operation-Location"
    KNOWLEDGE_SOURCE_LIST_FILE_NAME = "sources.jsonl"

    # Pro mode and training only accept document data
    SUPPORTED_FILE_TYPES_DOCUMENT = [
        ".pdf",
        ".tiff",
        ".jpg",
        ".jpeg",
        ".png",
        ".bmp",
        ".heif",
    ]

    def __init__(
        self,
        endpoint: str,
        api_version: str,
        subscription_key: Optional[str] = None,
        token_provider: Optional[Callable[[], Any]] = None,
        user_agent: str = "cu-sample-code",
        session: Optional[aiohttp.ClientSession] = None,
        on_status_change: Optional[StatusCallback] = None,
    ):
        if not subscription_key and token_provider is None:
            raise ValueError("Either subscription key or token provider must be provided.")
        if not api_version:
            raise ValueError("API version must be provided.")
        if not endpoint:
            raise ValueError("Endpoint must be provided.")

        self.endpoint = endpoint.rstrip("/")
        self.api_version = api_version
        self.subscription_key = subscription_key
        self.token_provider = token_provider
        self.user_agent = user_agent
        self.on_status_change = on_status_change
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        token_provider: Optional[Callable[[], Any]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> "ContentUnderstandingClient":
        return cls(
            endpoint=settings.endpoint,
            api_version=settings.api_version,
            subscription_key=settings.subscription_key,
            token_provider=token_provider,
            user_agent=settings.user_agent,
            session=session,
        )

    async def __aenter__(self) -> "ContentUnderstandingClient":
        self._get_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            if not self._session.closed:
                await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # URLs

    def _get_analyzer_url(self, analyzer_id: str) -> str:
        return f"{self.endpoint}/contentunderstanding/analyzers/{analyzer_id}?api-version={self.api_version}"

    def _get_analyzer_list_url(self) -> str:
        return f"{self.endpoint}/contentunderstanding/analyzers?api-version={self.api_version}"

    def _get_analyze_url(self, analyzer_id: str) -> str:
        return f"{self.endpoint}/contentunderstanding/analyzers/{analyzer_id}:analyze?api-version={self.api_version}"

    def _get_classifier_url(self, classifier_id: str) -> str:
        return f"{self.endpoint}/contentunderstanding/classifiers/{classifier_id}?api-version={self.api_version}"

    def _get_classify_url(self, classifier_id: str) -> str:
        return f"{self.endpoint}/contentunderstanding/classifiers/{classifier_id}:classify?api-version={self.api_version}"

    def _get_defaults_url(self) -> str:
        return f"{self.endpoint}/contentunderstanding/defaults?api-version={self.api_version}"

    # Transport

    async def _get_headers(self, content_type: Optional[str] = None) -> Dict[str, str]:
        """Builds auth, user agent and content type headers for one request"""
        if self.subscription_key:
            headers = {"Ocp-Apim-Subscription-Key": self.subscription_key}
        else:
            try:
                token = self.token_provider()
                if inspect.isawaitable(token):
                    token = await token
            except Exception as e:
                self.logger.error(f"Token provider failed: {e}")
                raise AuthError(f"Failed to acquire access token: {e}") from e
            headers = {"Authorization": f"Bearer {token}"}

        headers["x-ms-useragent"] = self.user_agent
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        json_body: Optional[Any] = None,
        data: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> _RawResponse:
        if json_body is not None:
            content_type = content_type or "application/json"
            data = json.dumps(json_body).encode("utf-8")
        elif data is not None:
            content_type = content_type or "application/octet-stream"

        headers = await self._get_headers(content_type)
        session = self._get_session()

        try:
            async with session.request(method, url, headers=headers, data=data) as response:
                body = await response.read()
                return _RawResponse(response.status, response.headers, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"{method} {url} failed: {e!r}")
            raise TransportError(f"{method} {url} failed: {e}") from e

    async def _get_json(self, url: str) -> Any:
        response = await self._send("GET", url)
        if not response.ok:
            self.logger.error(f"HTTP error {response.status} at {url}: {response.text}")
            raise ValidationError(response.status, response.text, url)
        return decode(response.body)

    # Request submitter

    async def _submit(
        self,
        method: str,
        url: str,
        json_body: Optional[Any] = None,
        data: Optional[bytes] = None,
    ) -> OperationHandle:
        """Sends a request that starts a long-running operation and returns its handle"""
        response = await self._send(method, url, json_body=json_body, data=data)

        if not response.ok:
            self.logger.error(f"HTTP error {response.status} at {url}: {response.text}")
            raise ValidationError(response.status, response.text, url)

        operation_location = response.headers.get(self.OPERATION_LOCATION)
        if not operation_location:
            self.logger.error(f"No {self.OPERATION_LOCATION} header in response from {url}")
            raise ProtocolError(
                f"{self.OPERATION_LOCATION} header not found in response from {url} "
                f"(HTTP {response.status})"
            )

        request_id = response.headers.get("apim-request-id") or response.headers.get(
            "x-ms-request-id"
        )
        return OperationHandle(operation_url=operation_location, request_id=request_id)

    def _is_supported_document(self, file_path: Path) -> bool:
        return file_path.is_file() and file_path.suffix.lower() in self.SUPPORTED_FILE_TYPES_DOCUMENT

    def _build_content_request(self, file_location: str, allow_directory: bool) -> Dict[str, Any]:
        """Turns a file, directory or URL into keyword arguments for _submit"""
        file_path = Path(file_location)
        if file_path.is_dir() and allow_directory:
            # Only pro mode accepts several input files
            inputs = [
                {
                    "name": "_".join(f.relative_to(file_path).parts),
                    "data": base64.b64encode(f.read_bytes()).decode("utf-8"),
                }
                for f in sorted(file_path.rglob("*"))
                if self._is_supported_document(f)
            ]
            if not inputs:
                raise ValueError(f"Directory {file_location} contains no supported document files.")
            return {"json_body": {"inputs": inputs}}
        if file_path.is_file():
            return {"data": file_path.read_bytes()}
        if file_location.startswith(("https://", "http://")):
            return {"json_body": {"url": file_location}}
        raise ValueError("File location must be a valid path or URL.")

    @staticmethod
    def _normalize_prefix(prefix: str) -> str:
        return prefix if prefix.endswith("/") else prefix + "/"

    async def begin_create_analyzer(
        self,
        analyzer_id: str,
        analyzer_template: Optional[Dict[str, Any]] = None,
        analyzer_template_path: Optional[str] = None,
        training_storage_container_sas_url: str = "",
        training_storage_container_path_prefix: str = "",
        pro_mode_reference_docs_storage_container_sas_url: str = "",
        pro_mode_reference_docs_storage_container_path_prefix: str = "",
    ) -> OperationHandle:
        """Starts creation of an analyzer from a template dict or a template JSON file.

        Training data and pro mode reference documents are attached to the
        template when both the container URL and the path prefix are given.
        """
        if analyzer_template_path and Path(analyzer_template_path).is_file():
            analyzer_template = json.loads(Path(analyzer_template_path).read_text(encoding="utf-8"))

        if not analyzer_template:
            raise ValueError("Analyzer schema must be provided.")
        if not analyzer_id:
            raise ValueError("Analyzer ID must be provided.")

        analyzer_template = dict(analyzer_template)

        if training_storage_container_sas_url and training_storage_container_path_prefix:
            analyzer_template["trainingData"] = {
                "containerUrl": training_storage_container_sas_url,
                "kind": "blob",
                "prefix": self._normalize_prefix(training_storage_container_path_prefix),
            }

        if (
            pro_mode_reference_docs_storage_container_sas_url
            and pro_mode_reference_docs_storage_container_path_prefix
        ):
            analyzer_template["knowledgeSources"] = [
                {
                    "kind": "reference",
                    "containerUrl": pro_mode_reference_docs_storage_container_sas_url,
                    "prefix": self._normalize_prefix(
                        pro_mode_reference_docs_storage_container_path_prefix
                    ),
                    "fileListPath": self.KNOWLEDGE_SOURCE_LIST_FILE_NAME,
                }
            ]

        handle = await self._submit(
            "PUT", self._get_analyzer_url(analyzer_id), json_body=analyzer_template
        )
        self.logger.info(f"Analyzer {analyzer_id} create request accepted.")
        return handle

    async def begin_analyze(self, analyzer_id: str, file_location: str) -> OperationHandle:
        """Starts analysis of a local file, a local directory (pro mode) or a URL"""
        if not analyzer_id:
            raise ValueError("Analyzer ID must be provided.")

        request = await asyncio.to_thread(
            self._build_content_request, file_location, allow_directory=True
        )
        handle = await self._submit("POST", self._get_analyze_url(analyzer_id), **request)
        self.logger.info(f"Analyzing {file_location} with analyzer: {analyzer_id}")
        return handle

    async def begin_analyze_data(self, analyzer_id: str, data: bytes) -> OperationHandle:
        if not analyzer_id:
            raise ValueError("Analyzer ID must be provided.")

        handle = await self._submit("POST", self._get_analyze_url(analyzer_id), data=data)
        self.logger.info(f"Analyzing {len(data)} bytes with analyzer: {analyzer_id}")
        return handle

    async def begin_create_classifier(
        self, classifier_id: str, classifier_schema: Dict[str, Any]
    ) -> OperationHandle:
        if not classifier_id:
            raise ValueError("Classifier ID must be provided.")
        if not classifier_schema:
            raise ValueError("Classifier schema must be provided.")

        handle = await self._submit(
            "PUT", self._get_classifier_url(classifier_id), json_body=classifier_schema
        )
        self.logger.info(f"Classifier {classifier_id} create request accepted.")
        return handle

    async def begin_classify(self, classifier_id: str, file_location: str) -> OperationHandle:
        if not classifier_id:
            raise ValueError("Classifier ID must be provided.")

        request = await asyncio.to_thread(
            self._build_content_request, file_location, allow_directory=False
        )
        handle = await self._submit("POST", self._get_classify_url(classifier_id), **request)
        self.logger.info(f"Classifying {file_location} with classifier: {classifier_id}")
        return handle

    # Operation poller

    async def _get_status_once(self, handle: OperationHandle, start_time: float) -> StatusResponse:
        """Fetches the operation status from the operation location"""
        url = handle.operation_url
        response = await self._send("GET", url)

        if not response.ok:
            self.logger.error(f"HTTP error {response.status} at {url}: {response.text}")
            raise TransportError(
                f"Polling {url} returned HTTP {response.status}",
                status_code=response.status,
                detail=response.text,
            )

        data = decode(response.body)
        if not isinstance(data, dict) or not isinstance(data.get("status"), str):
            raise MalformedResponseError(f"Operation body from {url} has no status field")

        raw_status = data["status"]
        return StatusResponse(
            status=OperationStatus.parse(raw_status),
            raw_status=raw_status,
            raw_response=data,
            elapsed_time=asyncio.get_running_loop().time() - start_time,
        )

    async def _handle_status_change(
        self,
        status_response: StatusResponse,
        last_status: Optional[str],
        on_status_change: Optional[StatusCallback],
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status == status_response.raw_status:
            return
        self.logger.debug(f"Operation status changed to {status_response.raw_status}")
        if on_status_change is not None:
            outcome = on_status_change(status_response)
            if inspect.isawaitable(outcome):
                await outcome

    async def _wait_before_retry(self, delay: float, operation_id: str) -> None:
        self.logger.debug(f"Operation {operation_id} in progress, waiting {delay:.2f}s")
        await asyncio.sleep(delay)

    @staticmethod
    def _extract_error(data: Dict[str, Any]) -> OperationError:
        error = data.get("error")
        if not isinstance(error, dict):
            return OperationError(details=error)
        code = error.get("code")
        message = error.get("message")
        return OperationError(
            code="" if code is None else code,
            message="" if message is None else message,
            details=error.get("details") or error.get("innererror"),
        )

    async def poll_result(
        self,
        handle: OperationHandle,
        timeout_seconds: float,
        polling_interval_seconds: float = 2.0,
        on_status_change: Optional[StatusCallback] = None,
    ) -> ResultDocument:
        """Polls the operation until it succeeds, fails or runs out of time.

        Args:
            handle: the operation returned by one of the begin_* methods.
            timeout_seconds: budget for the whole wait. There is no default,
                since analyze, classify and pro mode operations differ by
                an order of magnitude.
            polling_interval_seconds: pause between two status requests.
            on_status_change: called (or awaited) whenever the status string
                changes; falls back to the client's own callback.

        Raises:
            OperationFailedError: the service reported a failed status.
            OperationTimeoutError: no terminal status within the budget.
            TransportError: a status request could not be completed.
            MalformedResponseError: a status body was not usable JSON.
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive.")
        if polling_interval_seconds <= 0:
            raise ValueError("polling_interval_seconds must be positive.")

        callback = on_status_change or self.on_status_change
        operation_id = handle.operation_id
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        deadline = start_time + timeout_seconds
        attempts = 0
        last_status: Optional[str] = None

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                self._raise_timeout(timeout_seconds, last_status, operation_id)

            try:
                status_response = await asyncio.wait_for(
                    self._get_status_once(handle, start_time), timeout=remaining
                )
            except asyncio.TimeoutError:
                self._raise_timeout(timeout_seconds, last_status, operation_id)
            attempts += 1

            await self._handle_status_change(status_response, last_status, callback)
            last_status = status_response.raw_status

            if status_response.status is OperationStatus.succeeded:
                self.logger.info(
                    f"Operation {operation_id} succeeded after {status_response.elapsed_time:.2f} seconds."
                )
                return ResultDocument(
                    result=status_response.raw_response.get("result"),
                    raw_response=status_response.raw_response,
                    operation_id=operation_id,
                    elapsed_time=status_response.elapsed_time,
                    attempts=attempts,
                )

            if status_response.status is OperationStatus.failed:
                error = self._extract_error(status_response.raw_response)
                self.logger.error(
                    f"Operation {operation_id} failed: [{error.code}] {error.message}"
                )
                raise OperationFailedError(error, operation_id)

            if status_response.status is None:
                self.logger.warning(
                    f"Operation {operation_id} reported unknown status {last_status!r}, still waiting"
                )

            remaining = deadline - loop.time()
            if remaining > 0:
                await self._wait_before_retry(min(polling_interval_seconds, remaining), operation_id)

    def _raise_timeout(
        self, timeout_seconds: float, last_status: Optional[str], operation_id: str
    ) -> None:
        self.logger.error(f"Operation {operation_id} timed out after {timeout_seconds} seconds")
        raise OperationTimeoutError(timeout_seconds, last_status, operation_id)

    async def poll_with_config(
        self,
        handle: OperationHandle,
        config: PollingConfig,
        on_status_change: Optional[StatusCallback] = None,
    ) -> ResultDocument:
        return await self.poll_result(
            handle,
            timeout_seconds=config.timeout_seconds,
            polling_interval_seconds=config.polling_interval_seconds,
            on_status_change=on_status_change,
        )

    # Submit and wait

    async def create_analyzer_and_wait(
        self, analyzer_id: str, config: PollingConfig, **template_kwargs: Any
    ) -> ResultDocument:
        handle = await self.begin_create_analyzer(analyzer_id, **template_kwargs)
        return await self.poll_with_config(handle, config)

    async def analyze_and_wait(
        self, analyzer_id: str, file_location: str, config: PollingConfig
    ) -> ResultDocument:
        handle = await self.begin_analyze(analyzer_id, file_location)
        return await self.poll_with_config(handle, config)

    async def classify_and_wait(
        self, classifier_id: str, file_location: str, config: PollingConfig
    ) -> ResultDocument:
        handle = await self.begin_classify(classifier_id, file_location)
        return await self.poll_with_config(handle, config)

    # Analyzer management

    async def get_all_analyzers(self) -> List[Dict[str, Any]]:
        """Lists every analyzer, following nextLink across pages"""
        analyzers: List[Dict[str, Any]] = []
        url: Optional[str] = self._get_analyzer_list_url()
        visited = set()

        while url:
            if url in visited:
                raise ProtocolError(f"Analyzer list pagination loops back to {url}")
            visited.add(url)

            data = await self._get_json(url)
            if not isinstance(data, dict):
                raise MalformedResponseError(f"Analyzer list from {url} is not a JSON object")
            page = AnalyzerListResponse.model_validate(data)
            analyzers.extend(page.value)
            url = page.next_link

        self.logger.debug(f"Listed {len(analyzers)} analyzers from {len(visited)} page(s)")
        return analyzers

    async def get_analyzer_detail_by_id(self, analyzer_id: str) -> Dict[str, Any]:
        return await self._get_json(self._get_analyzer_url(analyzer_id))

    async def delete_analyzer(self, analyzer_id: str) -> None:
        url = self._get_analyzer_url(analyzer_id)
        response = await self._send("DELETE", url)
        if not response.ok:
            self.logger.error(f"HTTP error {response.status} at {url}: {response.text}")
            raise ValidationError(response.status, response.text, url)
        self.logger.info(f"Analyzer {analyzer_id} deleted.")

    async def get_image_from_analyze_operation(
        self, handle: OperationHandle, image_id: str
    ) -> bytes:
        """Downloads an image (e.g. a detected face or keyframe) produced by an analyze operation"""
        operation_location = handle.operation_url.split("?api-version")[0]
        url = f"{operation_location}/files/{image_id}?api-version={self.api_version}"

        response = await self._send("GET", url)
        if not response.ok:
            self.logger.error(f"HTTP error {response.status} at {url}: {response.text}")
            raise ValidationError(response.status, response.text, url)

        content_type = response.headers.get("Content-Type")
        if content_type is None or content_type.split(";")[0].strip() != "image/jpeg":
            raise InvalidContentTypeError("image/jpeg", content_type)
        return response.body

    # Model deployment defaults

    async def get_defaults(self) -> Dict[str, Any]:
        """Returns the resource defaults, including the ``modelDeployments`` mapping"""
        return await self._get_json(self._get_defaults_url())

    async def update_defaults(self, model_deployments: Dict[str, Optional[str]]) -> Dict[str, Any]:
        """Maps model names (e.g. ``gpt-4.1``) to deployment names in the resource defaults.

        The body is a JSON merge patch: a ``None`` deployment removes that
        model's mapping, models left out keep their current one.
        """
        if not model_deployments:
            raise ValueError("At least one model deployment must be provided.")

        url = self._get_defaults_url()
        response = await self._send(
            "PATCH",
            url,
            json_body={"modelDeployments": model_deployments},
            content_type="application/merge-patch+json",
        )
        if not response.ok:
            self.logger.error(f"HTTP error {response.status} at {url}: {response.text}")
            raise ValidationError(response.status, response.text, url)

        defaults = decode(response.body)
        if not isinstance(defaults, dict):
            raise MalformedResponseError(f"Defaults from {url} are not a JSON object")
        self.logger.info(f"Default model deployments updated: {defaults.get('modelDeployments')}")
        return defaults
