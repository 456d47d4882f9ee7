from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from reconciler.config import Settings, get_settings

logger = logging.getLogger(__name__)

RequestFunc = Callable[[str, str, dict[str, str], dict[str, Any] | None, int], Any]

IGNORABLE_ERROR_CODES = frozenset(
    {
        "already-exists",
        "already-tracked",
        "already-untracked",
        "already-defined",
        "not-exists",
    }
)
_REMOVAL_ONLY_CODES = frozenset({"not-found", "permission-denied"})
_CODE_IN_MESSAGE = re.compile(r"\(Code: ([\w-]+)\)")


class MetadataError(RuntimeError):
    """Raised when the GraphQL engine rejects a metadata or run_sql request."""

    def __init__(self, message: str, *, code: str = "unknown", request_type: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.request_type = request_type


@dataclass(frozen=True)
class MetadataClientConfig:
    url: str
    admin_secret: str
    source: str = "default"
    timeout_seconds: int = 30


def _is_removal(request_type: str) -> bool:
    return (
        request_type.startswith("pg_drop_")
        or request_type.startswith("pg_untrack_")
        or request_type.startswith("pg_delete_")
        or request_type.startswith("delete_")
        or request_type.startswith("remove_")
        or request_type.endswith("_delete_permission")
    )


class MetadataClient:
    """Thin wrapper around the GraphQL engine's administrative API."""

    def __init__(
        self,
        *,
        config: MetadataClientConfig,
        request_func: RequestFunc | None = None,
    ) -> None:
        url = (config.url or "").strip()
        secret = (config.admin_secret or "").strip()
        if not url:
            raise ValueError("GraphQL engine URL is required to initialize MetadataClient.")
        if not secret:
            raise ValueError("GraphQL engine admin secret is required to initialize MetadataClient.")

        base = url if url.startswith("http") else f"http://{url}"
        base = base.rstrip("/")
        if base.endswith("/v1/graphql"):
            base = base[: -len("/v1/graphql")]
        self._base_url = base
        self._secret = secret
        self._timeout = max(1, config.timeout_seconds)
        self._request_func = request_func
        self.source = config.source or "default"

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "MetadataClient":
        resolved = settings or get_settings()
        config = MetadataClientConfig(
            url=resolved.hasura_url or "",
            admin_secret=resolved.hasura_admin_secret or "",
            source=resolved.hasura_source,
            timeout_seconds=resolved.hasura_timeout_seconds,
        )
        return cls(config=config, **kwargs)

    @property
    def base_url(self) -> str:
        return self._base_url

    def metadata(self, request_type: str, args: Mapping[str, Any] | None = None) -> Any:
        payload = {"type": request_type, "args": dict(args or {})}
        logger.info("Sending metadata request %s", request_type)
        return self._request("/v1/metadata", payload, request_type=request_type)

    def bulk(self, requests_: Iterable[Mapping[str, Any]]) -> Any:
        args = [dict(item) for item in requests_]
        logger.info("Sending bulk metadata request with %d operations", len(args))
        return self._request("/v1/metadata", {"type": "bulk", "args": args}, request_type="bulk")

    def run_sql(self, sql: str, *, cascade: bool = False, read_only: bool = False) -> Mapping[str, Any]:
        payload = {
            "type": "run_sql",
            "args": {
                "source": self.source,
                "sql": sql,
                "cascade": cascade,
                "read_only": read_only,
            },
        }
        logger.debug("Executing SQL via /v2/query: %s", sql.strip())
        response = self._request("/v2/query", payload, request_type="run_sql", absorb_conflicts=False)
        return response if isinstance(response, Mapping) else {}

    def reload_metadata(self) -> Any:
        return self.metadata("reload_metadata", {"reload_remote_schemas": False})

    def export_metadata(self) -> Any:
        return self.metadata("export_metadata", {})

    def get_inconsistent_metadata(self) -> Any:
        return self.metadata("get_inconsistent_metadata", {})

    def drop_inconsistent_metadata(self) -> Any:
        return self.metadata("drop_inconsistent_metadata", {})

    def _request(
        self,
        path: str,
        payload: Mapping[str, Any],
        *,
        request_type: str,
        absorb_conflicts: bool = True,
    ) -> Any:
        url = f"{self._base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "X-Hasura-Admin-Secret": self._secret,
        }
        try:
            response = self._dispatch_request(url, headers, dict(payload))
        except MetadataError:
            raise
        except Exception as exc:
            raise MetadataError(
                f"Request {request_type} to {path} failed: {exc}", request_type=request_type
            ) from exc

        body = self._decode(response)
        if 200 <= response.status_code < 300:
            return body

        message, code = self._extract_error(body, response, request_type)
        if absorb_conflicts and self._is_ignorable(request_type, code, body):
            logger.warning(
                "Non-critical metadata issue for %s: %s (Code: %s). Proceeding.",
                request_type,
                message,
                code,
            )
            return body if body is not None else {"success": True, "info": message, "code": code}

        logger.error("Metadata request %s failed: %s (Code: %s)", request_type, message, code)
        raise MetadataError(
            f"Error in {path} for type {request_type}: {message} (Code: {code})",
            code=code,
            request_type=request_type,
        )

    def _dispatch_request(self, url: str, headers: dict[str, str], payload: dict[str, Any]):
        if self._request_func is not None:
            return self._request_func("POST", url, headers, payload, self._timeout)

        import requests

        return requests.request("POST", url, headers=headers, json=payload, timeout=self._timeout)

    @staticmethod
    def _decode(response: Any) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _extract_error(body: Any, response: Any, request_type: str) -> tuple[str, str]:
        message = "Unknown metadata API error"
        code = "unknown"

        if isinstance(body, list):
            first = next(
                (item for item in body if isinstance(item, Mapping) and (item.get("error") or item.get("code"))),
                None,
            )
            if first is not None:
                message = str(first.get("message") or first.get("error") or message)
                code = str(first.get("code") or code)
        elif isinstance(body, Mapping):
            errors = body.get("errors")
            first_error = errors[0] if isinstance(errors, list) and errors and isinstance(errors[0], Mapping) else {}
            internal = body.get("internal")
            first_internal = (
                internal[0] if isinstance(internal, list) and internal and isinstance(internal[0], Mapping) else {}
            )
            message = str(body.get("error") or body.get("message") or first_error.get("message") or message)
            extensions = first_error.get("extensions") if isinstance(first_error.get("extensions"), Mapping) else {}
            code = str(body.get("code") or first_internal.get("code") or extensions.get("code") or code)
        else:
            text = getattr(response, "text", None)
            if text:
                message = str(text).strip()

        if code == "unknown":
            match = _CODE_IN_MESSAGE.search(message)
            if match:
                code = match.group(1)
        return message, code

    @staticmethod
    def _is_ignorable(request_type: str, code: str, body: Any) -> bool:
        if code in IGNORABLE_ERROR_CODES:
            return True
        if code in _REMOVAL_ONLY_CODES and _is_removal(request_type):
            logger.info("Ignoring %r for %s; the target was already absent.", code, request_type)
            return True

        if request_type == "bulk" and code in {"bulk-error", "pg-error", "unknown"} and isinstance(body, Mapping):
            internal = body.get("internal")
            items = internal if isinstance(internal, list) else [internal] if internal else []
            if not items:
                return False
            for item in items:
                if not isinstance(item, Mapping):
                    return False
                item_code = item.get("code")
                if item_code in IGNORABLE_ERROR_CODES or item_code in _REMOVAL_ONLY_CODES:
                    continue
                return False
            return True
        return False
