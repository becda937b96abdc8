"""HTTP request step executor."""

import json
import logging
from collections.abc import Mapping
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..exceptions import ExecutorError
from ..expressions import ExpressionEvaluator, to_serializable
from ..graph import NodeType
from ..playbook import Context, StepResult
from .base import StepExecutor

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = [429, 500, 502, 503, 504]


class HttpRequestExecutor(StepExecutor):
    """Issues an HTTP call built from the node configuration.

    Config keys (all may be templated):
        method: HTTP method, default GET
        url: Target URL
        headers: Mapping of header name to value
        body: Text body, or a mapping/list sent as JSON
        timeout: Per-step timeout override in seconds
        retries: Retries on connection errors and 429/5xx responses (default 0)

    Output is ``{status_code, headers, body}``. A non-2xx response fails the
    step but keeps the output so downstream conditions can inspect it.
    """

    node_type = NodeType.HTTP_REQUEST

    def __init__(
        self,
        evaluator: ExpressionEvaluator,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        max_body_bytes: int = 1024 * 1024,
    ):
        super().__init__(evaluator)
        self.session = session
        self.timeout = timeout
        self.max_body_bytes = max_body_bytes

    def _create_session(self, retries: int) -> requests.Session:
        """Create requests session with retry adapter."""
        session = requests.Session()

        if retries > 0:
            retry = Retry(
                total=retries,
                backoff_factor=1.0,
                status_forcelist=RETRY_STATUS_CODES,
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("http://", adapter)
            session.mount("https://", adapter)

        return session

    def execute(self, config: Dict[str, Any], ctx: Context) -> StepResult:
        method = (self.resolve_text(config.get("method"), ctx) or "GET").strip().upper()
        url = self.resolve_text(config.get("url"), ctx).strip()
        if not url:
            raise ExecutorError("url is required")

        raw_headers = config.get("headers") or {}
        if not isinstance(raw_headers, Mapping):
            raise ExecutorError("headers must be a mapping")
        headers = {str(k): self.resolve_text(v, ctx) for k, v in raw_headers.items()}

        timeout_value = self.resolve(config.get("timeout"), ctx)
        try:
            timeout = float(timeout_value) if timeout_value not in (None, "") else self.timeout
        except (TypeError, ValueError):
            raise ExecutorError(f"Invalid timeout: {timeout_value!r}")
        if timeout <= 0:
            raise ExecutorError(f"Invalid timeout: {timeout_value!r}")

        retries_value = self.resolve(config.get("retries"), ctx)
        try:
            retries = int(retries_value) if retries_value not in (None, "") else 0
        except (TypeError, ValueError):
            raise ExecutorError(f"Invalid retries: {retries_value!r}")
        if retries < 0:
            raise ExecutorError(f"Invalid retries: {retries_value!r}")

        kwargs: Dict[str, Any] = {"headers": headers, "timeout": timeout}
        body = self.resolve(config.get("body"), ctx)
        if isinstance(body, (Mapping, list)):
            kwargs["json"] = to_serializable(body)
        elif body is not None and body != "":
            kwargs["data"] = str(body).encode("utf-8")

        logger.info(f"HTTP {method} {url}")

        session = self.session or self._create_session(retries)
        try:
            response = session.request(method, url, **kwargs)
        except requests.Timeout:
            raise ExecutorError(f"Request to {url} timed out after {timeout}s")
        except requests.RequestException as e:
            raise ExecutorError(f"Request to {url} failed: {e}")
        finally:
            if self.session is None:
                session.close()

        output = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": self._parse_body(response),
        }

        if not 200 <= response.status_code < 300:
            return StepResult.failed(
                f"HTTP {response.status_code}: {response.reason}",
                output=output,
            )
        return StepResult.success(output=output)

    def _parse_body(self, response: requests.Response) -> Any:
        """Decode a response body as JSON when possible, text otherwise."""
        content = response.content or b""
        if len(content) > self.max_body_bytes:
            logger.warning(
                f"Response body truncated from {len(content)} to {self.max_body_bytes} bytes"
            )
            content = content[: self.max_body_bytes]

        text = content.decode(response.encoding or "utf-8", errors="replace")
        try:
            return json.loads(text)
        except ValueError:
            return text
