"""Best-effort enrichment collaborators.

- ``TitoClient``: ticket search (by convocation number, carried as a ticket
  tag) and station check-ins on the public check-in API.
- ``GraduateDirectory``: graduate identity from the Airtable graduates table.

Lookups raise ``BackendUnavailableError`` on failure so callers can log and
carry on without the fields. Check-ins never raise; they report the outcome.
"""

import logging
from typing import Any, Optional

import httpx

from config import AirtableConfig, TitoConfig
from errors import BackendUnavailableError
from models import GraduateIdentity, Station, TitoCheckinResult, TitoTicket
from services.airtable_store import escape_formula_value

logger = logging.getLogger(__name__)


def _ticket_from_json(data: dict[str, Any]) -> TitoTicket:
    name = data.get("name")
    if not name:
        name = " ".join(p for p in (data.get("first_name"), data.get("last_name")) if p) or None
    return TitoTicket(
        id=data["id"],
        slug=data.get("slug", ""),
        name=name,
        tag_names=data.get("tag_names") or [],
    )


class TitoClient:
    """Client for the ticketing admin and check-in APIs."""

    def __init__(self, config: TitoConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._config.api_token and self._config.account_slug and self._config.event_slug)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search_tickets(self, query: str) -> list[TitoTicket]:
        """Search event tickets by free text.

        Raises:
            BackendUnavailableError: Not configured, network failure or non-2xx answer.
        """
        if not self.configured:
            raise BackendUnavailableError("Tito API credentials not configured")

        url = (
            f"{self._config.api_base.rstrip('/')}/{self._config.account_slug}"
            f"/{self._config.event_slug}/tickets"
        )
        try:
            response = await self._get_client().get(
                url,
                params={"search[q]": query},
                headers={
                    "Authorization": f"Token token={self._config.api_token}",
                    "Accept": "application/json",
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Tito ticket search failed for '{query}': {e}")
            raise BackendUnavailableError(f"Tito API error: {e}") from e

        return [_ticket_from_json(t) for t in response.json().get("tickets", [])]

    async def find_ticket_by_convocation_number(self, convocation_number: str) -> Optional[TitoTicket]:
        """Find the ticket tagged with a convocation number."""
        wanted = convocation_number.upper().strip()
        for ticket in await self.search_tickets(wanted):
            if any(tag.upper().strip() == wanted for tag in ticket.tag_names):
                return ticket
        return None

    def checkin_list_for(self, station: Station) -> Optional[str]:
        return self._config.checkin_lists.get(station.value)

    async def checkin(self, checkin_list_slug: str, ticket_id: int) -> TitoCheckinResult:
        """Check a ticket in on a check-in list.

        The check-in API authenticates by list slug, not by token.
        """
        url = f"{self._config.checkin_base.rstrip('/')}/checkin_lists/{checkin_list_slug}/checkins"
        try:
            response = await self._get_client().post(
                url,
                json={"checkin": {"ticket_id": ticket_id}},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Tito check-in network error for ticket {ticket_id}: {e}")
            return TitoCheckinResult(success=False, error=f"Network error: {e}")

        if response.is_error:
            logger.warning(f"Tito check-in error: {response.status_code} - {response.text}")
            if response.status_code == 422 and "already" in response.text:
                return TitoCheckinResult(success=False, error="Ticket already checked in at this station")
            return TitoCheckinResult(success=False, error=f"Check-in failed: {response.status_code}")

        logger.info(f"Tito check-in recorded for ticket {ticket_id} on {checkin_list_slug}")
        return TitoCheckinResult(success=True)

    async def checkin_at_station(self, ticket_id: int, station: Station) -> Optional[TitoCheckinResult]:
        """Check a ticket in at a station, None when the station has no check-in list."""
        list_slug = self.checkin_list_for(station)
        if not list_slug:
            return None
        if not ticket_id:
            return TitoCheckinResult(success=False, error="Invalid ticket ID for check-in")
        return await self.checkin(list_slug, ticket_id)


class GraduateDirectory:
    """Graduate identity lookup on the Airtable graduates table."""

    def __init__(self, config: AirtableConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._config.api_key and self._config.base_id and self._config.graduates_table)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def find_by_convocation_number(self, convocation_number: str) -> Optional[GraduateIdentity]:
        """Look up a graduate by convocation number.

        Returns:
            The graduate, or None when the table has no matching row or is not configured.

        Raises:
            BackendUnavailableError: Network failure or non-2xx answer.
        """
        if not self.configured:
            return None

        wanted = convocation_number.upper().strip()
        url = f"{self._config.api_base.rstrip('/')}/{self._config.base_id}/{self._config.graduates_table}"
        try:
            response = await self._get_client().get(
                url,
                params={
                    "filterByFormula": f'{{Convocation Number}}="{escape_formula_value(wanted)}"',
                    "maxRecords": 1,
                },
                headers={"Authorization": f"Bearer {self._config.api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Graduate lookup failed for {wanted}: {e}")
            raise BackendUnavailableError(f"Airtable error: {e}") from e

        records = response.json().get("records", [])
        if not records:
            return None

        fields = records[0].get("fields", {})
        return GraduateIdentity(
            convocation_number=wanted,
            name=fields.get("Name"),
            email=fields.get("Email"),
            course=fields.get("Course"),
        )
