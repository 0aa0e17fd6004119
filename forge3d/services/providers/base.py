"""
Common shape for external generation providers.

Every adapter reduces its provider's task/prediction payloads to a
ProviderUpdate so the workflow engine and the reconciler never look at
vendor JSON:

    {external_id, phase, progress_pct, artifact_urls, error_detail}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from forge3d.errors import OperationTimeout, ProviderRequestError, TransientProviderError
from forge3d.services.retry import raise_for_provider_status


class ProviderPhase:
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    TERMINAL = (SUCCEEDED, FAILED)


@dataclass
class ProviderUpdate:
    external_id: Optional[str]
    phase: str
    progress_pct: Optional[int] = None
    artifact_urls: Dict[str, Any] = field(default_factory=dict)
    error_detail: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in ProviderPhase.TERMINAL

    @property
    def succeeded(self) -> bool:
        return self.phase == ProviderPhase.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.phase == ProviderPhase.FAILED


class GenerationProvider:
    """Base interface for providers the reconciler can poll."""

    name: str = "unknown"
    session: requests.Session

    def is_configured(self) -> bool:
        return False

    def poll(self, external_id: str) -> ProviderUpdate:
        raise NotImplementedError

    # ─────────────────────────────────────────────────────────────
    # HTTP plumbing shared by the adapters
    # ─────────────────────────────────────────────────────────────
    def _send(
        self,
        method: str,
        url: str,
        action: str,
        **kwargs: Any,
    ) -> requests.Response:
        """Issue a request and map transport failures into the error taxonomy."""
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.ReadTimeout as e:
            # The request was sent; the provider may have acted on it
            raise OperationTimeout(
                f"{self.name} {action} timed out waiting for a response: {e}",
                timeout_seconds=kwargs.get("timeout"),
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientProviderError(f"{self.name} {action} network error: {e}")
        except requests.RequestException as e:
            raise ProviderRequestError(f"{self.name} {action} request failed: {e}")
        raise_for_provider_status(response, self.name, action)
        return response

    def _json(self, response: requests.Response, action: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise ProviderRequestError(f"{self.name} {action} returned non-JSON body")
        if not isinstance(data, dict):
            raise ProviderRequestError(f"{self.name} {action} returned unexpected payload")
        return data
