from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from mcp.server.fastmcp import FastMCP

logger = logging.getLogger(__name__)

BACKEND_BASE_URL = os.getenv("BACKEND_BASE_URL", "http://localhost:8000").rstrip("/")
BACKEND_API_BASE = os.getenv("BACKEND_API_BASE", "/api").rstrip("/")
SESSION_COOKIE_NAME = os.getenv("ASSISTANT_SESSION_COOKIE", "assistant_session")
DEFAULT_SESSION_ID = os.getenv("ASSISTANT_SESSION_ID", "").strip()
REQUEST_TIMEOUT = float(os.getenv("MCP_BACKEND_TIMEOUT", "15"))


class BackendClient:
  """Calls the assistant's HTTP API on behalf of one cookie session.

  Every call returns ``{"ok": True, "data": ...}`` or an ``ok=False``
  envelope with a ``code``; transport failures never raise into the tool.
  """

  def __init__(self,
               base_url: str = BACKEND_BASE_URL,
               api_base: str = BACKEND_API_BASE,
               default_session_id: str = DEFAULT_SESSION_ID,
               timeout: float = REQUEST_TIMEOUT,
               http: Any = requests) -> None:
    self.base_url = base_url
    self.api_base = api_base
    self.default_session_id = default_session_id
    self.timeout = timeout
    self.http = http

  def _session_cookie(self, session_id: Optional[str]) -> Dict[str, str]:
    sid = (session_id or self.default_session_id or "").strip()
    if not sid:
      raise ValueError(
          "A session is required. Pass session_id or set ASSISTANT_SESSION_ID.")
    return {SESSION_COOKIE_NAME: sid}

  def call(self,
           method: str,
           path: str,
           session_id: Optional[str] = None,
           **kwargs: Any) -> Dict[str, Any]:
    url = f"{self.base_url}{self.api_base}/{path.lstrip('/')}"
    try:
      resp = self.http.request(method, url,
                               cookies=self._session_cookie(session_id),
                               timeout=self.timeout, **kwargs)
    except requests.RequestException as exc:
      logger.warning("backend %s %s failed: %s", method, url, exc)
      return {"ok": False, "code": "request_failed", "message": str(exc)}

    try:
      data = resp.json()
    except ValueError:
      data = {"raw": resp.text}
    if resp.status_code >= 400:
      return {"ok": False, "code": "backend_error",
              "status": resp.status_code, "error": data}
    return {"ok": True, "data": data}


backend = BackendClient()
mcp = FastMCP("calendar-assistant")


@mcp.tool(name="conversation.send_message")
def send_message(
    message: str,
    conversation_id: Optional[str] = None,
    timezone: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
  """Send one user message to the assistant and return its reply."""
  payload: Dict[str, Any] = {"message": message}
  if conversation_id:
    payload["conversationId"] = conversation_id
  if timezone:
    payload["timezone"] = timezone
  logger.debug("conversation.send_message %s", payload)
  return backend.call("POST", "/conversation/message", session_id, json=payload)


@mcp.tool(name="threads.get_thread")
def get_thread(thread_id: str, session_id: Optional[str] = None) -> Dict[str, Any]:
  """Fetch a thread by its 24-hex id or by its conversation id."""
  return backend.call("GET", f"/threads/{quote(thread_id, safe='')}", session_id)


@mcp.tool(name="calendar.check_availability")
def check_availability(
    start: str,
    end: str,
    timezone: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
  """True when nothing on the calendar overlaps [start, end)."""
  params = {"start": start, "end": end}
  if timezone:
    params["timezone"] = timezone
  return backend.call("GET", "/availability", session_id, params=params)


if __name__ == "__main__":
  import uvicorn

  logging.basicConfig(level=logging.INFO)
  uvicorn.run(mcp.streamable_http_app(),
              host=os.getenv("MCP_HOST", "0.0.0.0"),
              port=int(os.getenv("MCP_PORT", "8001")))
