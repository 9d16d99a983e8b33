"""Fact providers: the gate's read-only view of financial and document facts.

The gate never computes facts itself. It asks a FactProvider for a snapshot
of one (project, phase) and hands it to the rule evaluator.
"""

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib.parse import quote

import httpx
import structlog

from phasegate.core.exceptions import FactProviderError
from phasegate.domain.rules import FactSnapshot

logger = structlog.get_logger(__name__)


class FactProvider(Protocol):
    async def snapshot(self, project_id: str, phase_number: int) -> FactSnapshot:
        """Return current facts for the phase or raise FactProviderError."""
        ...


class StaticFactProvider:
    """In-memory facts keyed by project. Used by tests and local development.

    Facts are stored per project because rules for phase N usually look at
    facts of phase N-1 (``phase.2.progress``, ``invoice.phase.2.status``).
    """

    def __init__(
        self,
        facts: Mapping[str, Mapping[str, Any]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._facts: dict[str, dict[str, Any]] = {pid: dict(values) for pid, values in (facts or {}).items()}
        self._clock = clock or (lambda: datetime.now(UTC))
        self.calls = 0

    def set_fact(self, project_id: str, key: str, value: Any) -> None:
        self._facts.setdefault(project_id, {})[key] = value

    def remove_fact(self, project_id: str, key: str) -> None:
        self._facts.get(project_id, {}).pop(key, None)

    async def snapshot(self, project_id: str, phase_number: int) -> FactSnapshot:
        self.calls += 1
        return FactSnapshot(
            project_id=project_id,
            phase_number=phase_number,
            values=dict(self._facts.get(project_id, {})),
            taken_at=self._clock(),
        )


class HttpFactProvider:
    """Fetches facts from the financial/document subsystem over HTTP.

    Expects ``GET {base_url}/projects/{project_id}/phases/{phase_number}/facts``
    to return ``{"facts": {...}, "taken_at": "<iso8601>"}``; ``taken_at`` is
    optional and defaults to the time of the request.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def snapshot(self, project_id: str, phase_number: int) -> FactSnapshot:
        url = f"{self.base_url}/projects/{quote(project_id, safe='')}/phases/{phase_number}/facts"
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "fact_snapshot_failed",
                project_id=project_id,
                phase_number=phase_number,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise FactProviderError(f"Facts unavailable for phase {phase_number} of project '{project_id}'") from exc

        facts = body.get("facts") if isinstance(body, dict) else None
        if not isinstance(facts, dict):
            raise FactProviderError(f"Malformed facts payload for phase {phase_number} of project '{project_id}'")

        taken_at = datetime.now(UTC)
        if body.get("taken_at"):
            try:
                taken_at = datetime.fromisoformat(body["taken_at"])
            except (TypeError, ValueError) as exc:
                raise FactProviderError(f"Malformed taken_at in facts payload: {body['taken_at']!r}") from exc

        return FactSnapshot(project_id=project_id, phase_number=phase_number, values=facts, taken_at=taken_at)
