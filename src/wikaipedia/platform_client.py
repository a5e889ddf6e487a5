import json
import time
from typing import Any, Dict, Iterator, List, Optional

import requests
from requests import exceptions as requests_exceptions


DEFAULT_PLATFORM_MCP_URL = "http://localhost:8795/mcp"
DEFAULT_APP_BASE_URL = "http://localhost:3000"


class PlatformError(Exception):
    """Transport or status failure reported by a marketplace collaborator."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PlatformAuthError(PlatformError):
    pass


def normalize_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def parse_json_object(text: Any) -> Optional[Dict[str, Any]]:
    """Parse a JSON object, falling back to the outermost ``{...}`` slice."""
    blob = normalize_str(text).strip()
    if not blob:
        return None
    try:
        parsed = json.loads(blob)
    except ValueError:
        start = blob.find("{")
        end = blob.rfind("}")
        if start == -1 or end == -1 or end <= start:
            return None
        try:
            parsed = json.loads(blob[start : end + 1])
        except ValueError:
            return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _error_message(resp: Any, default: str) -> str:
    try:
        data = resp.json()
    except Exception:
        data = {}
    if not isinstance(data, dict):
        data = {}
    error = data.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    message = error or data.get("hint") or data.get("message") or normalize_str(getattr(resp, "text", ""))
    return normalize_str(message).strip() or default


class PlatformClient:
    """JSON-RPC client for the marketplace tool endpoint.

    Every tool call is a ``tools/call`` request; the tool result is the JSON
    document carried in ``result.content[0].text``.
    """

    def __init__(self, mcp_url: str = DEFAULT_PLATFORM_MCP_URL, timeout: int = 60):
        self.mcp_url = normalize_str(mcp_url).strip() or DEFAULT_PLATFORM_MCP_URL
        self.timeout = timeout

    def _call_mcp(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = {
            "jsonrpc": "2.0",
            "id": f"mcp-{int(time.time() * 1000)}",
            "method": method,
            "params": params or {},
        }
        try:
            resp = requests.post(
                self.mcp_url,
                headers={"Content-Type": "application/json"},
                data=json.dumps(body),
                timeout=self.timeout,
            )
        except requests_exceptions.Timeout as e:
            raise PlatformError(f"Timed out while calling marketplace method={method}.") from e
        except requests_exceptions.RequestException as e:
            raise PlatformError(f"Marketplace unreachable method={method}: {e}") from e

        if resp.status_code in {401, 403}:
            raise PlatformAuthError(
                f"Marketplace auth error {resp.status_code}: {_error_message(resp, 'Authentication required')}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise PlatformError(
                f"MCP HTTP error ({resp.status_code}): {_error_message(resp, 'request failed')}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except Exception:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        error = payload.get("error")
        if error:
            if isinstance(error, dict):
                message = normalize_str(error.get("message")).strip() or "MCP call failed"
                data = error.get("data") if isinstance(error.get("data"), dict) else {}
                status = data.get("status") or data.get("statusCode")
            else:
                message = normalize_str(error).strip() or "MCP call failed"
                status = None
            raise PlatformError(message, status_code=int(status) if isinstance(status, (int, float)) else None)
        result = payload.get("result")
        return result if isinstance(result, dict) else {}

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        result = self._call_mcp("tools/call", {"name": name, "arguments": arguments or {}})
        raw = "{}"
        content = result.get("content")
        if isinstance(content, list) and content and isinstance(content[0], dict):
            raw = normalize_str(content[0].get("text")) or "{}"
        parsed = parse_json_object(raw) or {}
        if result.get("isError"):
            message = normalize_str(parsed.get("error") or raw).strip() or f"Tool {name} failed"
            status = parsed.get("status") or parsed.get("statusCode")
            raise PlatformError(message, status_code=int(status) if isinstance(status, (int, float)) else None)
        return parsed

    def get_agent_budget(self) -> Dict[str, Any]:
        return self.call_tool("get_agent_budget", {})

    def list_open_questions(self, limit: int) -> Dict[str, Any]:
        return self.call_tool("list_open_questions", {"limit": int(limit), "onlyOpen": True})

    def get_question(self, question_id: str) -> Dict[str, Any]:
        if not normalize_str(question_id).strip():
            raise ValueError("question_id must be provided")
        return self.call_tool("get_question", {"id": question_id})

    def search_similar_questions(self, query: str) -> Dict[str, Any]:
        return self.call_tool("search_similar_questions", {"query": query})

    def research_stackexchange(self, query: str, tags: List[str], limit: int = 3) -> Dict[str, Any]:
        return self.call_tool("research_stackexchange", {"query": query, "tags": list(tags), "limit": int(limit)})

    def post_answer(
        self,
        question_id: str,
        content: str,
        bid_amount_cents: int,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        if not content:
            raise ValueError("Answer content must be provided.")
        return self.call_tool(
            "post_answer",
            {
                "question_id": question_id,
                "content": content,
                "bidAmountCents": int(bid_amount_cents),
                "idempotencyKey": idempotency_key,
            },
        )

    def vote_post(self, post_id: str, direction: str, idempotency_key: str) -> Dict[str, Any]:
        if direction not in {"up", "down"}:
            raise ValueError("direction must be 'up' or 'down'.")
        return self.call_tool(
            "vote_post",
            {"post_id": post_id, "direction": direction, "idempotencyKey": idempotency_key},
        )

    def vote_answer(self, answer_id: str, direction: str, idempotency_key: str) -> Dict[str, Any]:
        if direction not in {"up", "down"}:
            raise ValueError("direction must be 'up' or 'down'.")
        return self.call_tool(
            "vote_answer",
            {"answer_id": answer_id, "direction": direction, "idempotencyKey": idempotency_key},
        )

    def list_wikis(self) -> Dict[str, Any]:
        return self.call_tool("list_wikis", {})

    def join_wiki(self, wiki_id: str, idempotency_key: str) -> Dict[str, Any]:
        return self.call_tool("join_wiki", {"wiki_id": wiki_id, "idempotencyKey": idempotency_key})

    def leave_wiki(self, wiki_id: str, idempotency_key: str) -> Dict[str, Any]:
        return self.call_tool("leave_wiki", {"wiki_id": wiki_id, "idempotencyKey": idempotency_key})

    def log_agent_event(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.call_tool("log_agent_event", {"type": event_type, "payload": payload})


class AppClient:
    """REST client for the marketplace web app (post listing and event stream)."""

    def __init__(self, base_url: str = DEFAULT_APP_BASE_URL, access_token: str = "", timeout: int = 30):
        self.base_url = (normalize_str(base_url).strip() or DEFAULT_APP_BASE_URL).rstrip("/")
        self.access_token = normalize_str(access_token).strip()
        self.timeout = timeout

    @property
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.base_url}/{path}"

    def list_posts(self) -> Dict[str, Any]:
        try:
            resp = requests.get(self._url("api/posts"), timeout=self.timeout)
        except requests_exceptions.Timeout as e:
            raise PlatformError("Timed out while fetching /api/posts.") from e
        except requests_exceptions.RequestException as e:
            raise PlatformError(f"Marketplace app unreachable: {e}") from e

        if resp.status_code >= 400:
            raise PlatformError(
                f"Could not fetch posts ({resp.status_code}): {_error_message(resp, 'request failed')}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except Exception:
            return {"posts": []}
        return data if isinstance(data, dict) else {"posts": []}

    def stream_question_events(self) -> Iterator[str]:
        """Yield raw text lines from the question notification stream."""
        headers = dict(self._headers)
        headers["Accept"] = "text/event-stream"
        url = self._url("api/events/questions")
        try:
            resp = requests.get(url, headers=headers, stream=True, timeout=(self.timeout, None))
        except requests_exceptions.RequestException as e:
            raise PlatformError(f"Event stream unreachable url={url}: {e}") from e

        if resp.status_code in {401, 403}:
            message = _error_message(resp, "Authentication required")
            resp.close()
            raise PlatformAuthError(f"Event stream auth error {resp.status_code}: {message}", status_code=resp.status_code)
        if resp.status_code >= 400:
            message = _error_message(resp, "stream failed")
            resp.close()
            raise PlatformError(f"Event stream failed ({resp.status_code}): {message[:300]}", status_code=resp.status_code)

        try:
            # Event streams are always UTF-8 whatever charset requests guesses.
            for raw in resp.iter_lines():
                yield raw.decode("utf-8", errors="replace")
        finally:
            resp.close()
