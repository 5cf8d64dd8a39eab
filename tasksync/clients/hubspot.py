"""HubSpot CRM API client for tickets, owners, pipelines and attachments."""

import logging
from datetime import datetime, timezone
from typing import Any, ClassVar, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field

from tasksync.clients.base import ApiClient
from tasksync.errors import SourceError

logger = logging.getLogger(__name__)

PAGE_LIMIT = 100
TICKET_TO_NOTE_ASSOCIATION_TYPE = 214
SIGNED_URL_EXPIRY_SECONDS = 300

TICKET_PROPERTIES = [
    "subject",
    "content",
    "hs_pipeline",
    "hs_pipeline_stage",
    "hs_ticket_priority",
    "hubspot_owner_id",
    "hs_due_date",
    "hs_ticket_category",
    "hs_resolution",
    "createdate",
    "hs_lastmodifieddate",
]


# ==================== Remote shapes ====================


class HubSpotTicketProperties(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subject: str | None = None
    content: str | None = None
    hs_pipeline: str | None = None
    hs_pipeline_stage: str | None = None
    hs_ticket_priority: str | None = None
    hubspot_owner_id: str | None = None
    hs_due_date: str | None = None
    hs_ticket_category: str | None = None
    hs_resolution: str | None = None
    createdate: str | None = None
    hs_lastmodifieddate: str | None = None


class HubSpotTicket(BaseModel):
    """A HubSpot ticket as returned by the CRM objects API."""

    model_config = ConfigDict(extra="ignore")

    id: str
    properties: HubSpotTicketProperties
    associations: dict[str, Any] = Field(default_factory=dict)

    @property
    def contact_ids(self) -> list[str]:
        contacts = self.associations.get("contacts") or {}
        return [str(c["id"]) for c in contacts.get("results", []) if c.get("id")]


class HubSpotStage(BaseModel):
    id: str
    label: str
    display_order: int = 0
    ticket_state: Literal["OPEN", "CLOSED"] | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "HubSpotStage":
        metadata = data.get("metadata") or {}
        return cls(
            id=data["id"],
            label=data.get("label", ""),
            display_order=data.get("displayOrder", 0),
            ticket_state=metadata.get("ticketState"),
        )


class HubSpotPipeline(BaseModel):
    id: str
    label: str
    display_order: int = 0
    stages: list[HubSpotStage] = Field(default_factory=list)

    def find_stage(self, stage_id: str | None) -> HubSpotStage | None:
        return next((s for s in self.stages if s.id == stage_id), None)

    def first_closed_stage(self) -> HubSpotStage | None:
        closed = [s for s in self.stages if s.ticket_state == "CLOSED"]
        return min(closed, key=lambda s: s.display_order) if closed else None


class HubSpotOwner(BaseModel):
    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email or self.id

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "HubSpotOwner":
        return cls(
            id=str(data["id"]),
            email=data.get("email") or "",
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
        )


class HubSpotContact(BaseModel):
    id: str
    firstname: str = ""
    lastname: str = ""
    email: str = ""

    @property
    def display_name(self) -> str:
        name = f"{self.firstname} {self.lastname}".strip()
        return name or self.email


class HubSpotAttachment(BaseModel):
    id: str
    name: str
    size: int = 0
    type: str = "application/octet-stream"
    url: str
    extension: str | None = None


class HubSpotAccountInfo(BaseModel):
    portal_id: int
    ui_domain: str = "app.hubspot.com"


def pipelines_from_api(payload: dict[str, Any]) -> list[HubSpotPipeline]:
    return [
        HubSpotPipeline(
            id=p["id"],
            label=p.get("label", ""),
            display_order=p.get("displayOrder", 0),
            stages=[HubSpotStage.from_api(s) for s in p.get("stages") or []],
        )
        for p in payload.get("results", [])
    ]


def open_stage_ids(pipelines: list[HubSpotPipeline]) -> set[str]:
    """IDs of every stage whose pipeline metadata marks it OPEN."""
    return {s.id for p in pipelines for s in p.stages if s.ticket_state == "OPEN"}


# ==================== Client ====================


class HubSpotClient(ApiClient):
    """Client for the HubSpot CRM REST API."""

    system: ClassVar[str] = "hubspot"
    base_url: ClassVar[str] = "https://api.hubapi.com"

    def __init__(self, token: str, **kwargs: Any) -> None:
        super().__init__(token, **kwargs)
        self._account_info: HubSpotAccountInfo | None = None

    def _auth_error_message(self, response: httpx.Response) -> str:
        return "HubSpot authentication failed. Please re-authenticate."

    # ==================== Tickets ====================

    async def get_tickets(
        self,
        pipeline_id: str | None = None,
        owner_id: str | None = None,
        modified_after: datetime | None = None,
        open_stages: set[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all tickets matching the filters.

        Args:
            pipeline_id: Only tickets in this pipeline
            owner_id: Only tickets owned by this owner
            modified_after: Only tickets modified at or after this time (search API)
            open_stages: Keep only tickets whose stage is in this set; HubSpot
                cannot filter on stage state server-side

        Returns:
            Raw ticket payloads in the order HubSpot returned them
        """
        tickets = await self._search_tickets(modified_after, pipeline_id, owner_id)

        if open_stages is not None:
            tickets = [
                t for t in tickets if t["properties"].get("hs_pipeline_stage") in open_stages
            ]

        logger.info(f"Fetched {len(tickets)} HubSpot tickets")
        return tickets

    async def _search_tickets(
        self,
        modified_after: datetime | None,
        pipeline_id: str | None,
        owner_id: str | None,
    ) -> list[dict[str, Any]]:
        filters: list[dict[str, str]] = []
        if modified_after is not None:
            filters.append(
                {
                    "propertyName": "hs_lastmodifieddate",
                    "operator": "GTE",
                    "value": str(_epoch_millis(modified_after)),
                }
            )
        if pipeline_id:
            filters.append({"propertyName": "hs_pipeline", "operator": "EQ", "value": pipeline_id})
        if owner_id:
            filters.append(
                {"propertyName": "hubspot_owner_id", "operator": "EQ", "value": owner_id}
            )

        async def fetch_page(after: str | None) -> tuple[list[dict[str, Any]], str | None]:
            body: dict[str, Any] = {"properties": TICKET_PROPERTIES, "limit": PAGE_LIMIT}
            if filters:
                body["filterGroups"] = [{"filters": filters}]
            if after:
                body["after"] = after
            data = await self.request_json("POST", "/crm/v3/objects/tickets/search", json=body)
            return data.get("results", []), _next_after(data)

        return await self.paginate(fetch_page)

    async def get_ticket(self, ticket_id: str) -> dict[str, Any] | None:
        return await self.request_json(
            "GET",
            f"/crm/v3/objects/tickets/{ticket_id}",
            params={"properties": ",".join(TICKET_PROPERTIES), "associations": "contacts"},
            allow_not_found=True,
        )

    async def update_ticket(self, ticket_id: str, properties: dict[str, Any]) -> None:
        await self.request(
            "PATCH", f"/crm/v3/objects/tickets/{ticket_id}", json={"properties": properties}
        )

    async def add_ticket_note(self, ticket_id: str, body: str) -> str:
        """Create a note and associate it with the ticket. Returns the note id."""
        note = await self.request_json(
            "POST",
            "/crm/v3/objects/notes",
            json={
                "properties": {
                    "hs_note_body": body,
                    "hs_timestamp": datetime.now(timezone.utc).isoformat(),
                }
            },
        )
        note_id = str(note["id"])
        await self.request(
            "PUT",
            f"/crm/v4/objects/tickets/{ticket_id}/associations/notes/{note_id}",
            json=[
                {
                    "associationCategory": "HUBSPOT_DEFINED",
                    "associationTypeId": TICKET_TO_NOTE_ASSOCIATION_TYPE,
                }
            ],
        )
        return note_id

    # ==================== Owners, pipelines, contacts ====================

    async def get_owners(self) -> list[HubSpotOwner]:
        async def fetch_page(after: str | None) -> tuple[list[dict[str, Any]], str | None]:
            params: dict[str, Any] = {"limit": PAGE_LIMIT}
            if after:
                params["after"] = after
            data = await self.request_json("GET", "/crm/v3/owners", params=params)
            return data.get("results", []), _next_after(data)

        return [HubSpotOwner.from_api(o) for o in await self.paginate(fetch_page)]

    async def get_owner(self, owner_id: str) -> HubSpotOwner | None:
        """Look up an owner; any failure is treated as absence."""
        try:
            data = await self.request_json(
                "GET", f"/crm/v3/owners/{owner_id}", allow_not_found=True
            )
        except SourceError as e:
            logger.warning(f"Failed to get HubSpot owner {owner_id}: {e}")
            return None
        return HubSpotOwner.from_api(data) if data else None

    async def get_pipelines(self) -> list[HubSpotPipeline]:
        data = await self.request_json("GET", "/crm/v3/pipelines/tickets")
        pipelines = pipelines_from_api(data or {})
        logger.info(f"Fetched {len(pipelines)} HubSpot pipelines")
        return pipelines

    async def get_contact(self, contact_id: str) -> HubSpotContact | None:
        """Look up a contact; any failure is treated as absence."""
        try:
            data = await self.request_json(
                "GET",
                f"/crm/v3/objects/contacts/{contact_id}",
                params={"properties": "firstname,lastname,email"},
                allow_not_found=True,
            )
        except SourceError as e:
            logger.warning(f"Failed to get HubSpot contact {contact_id}: {e}")
            return None
        if not data:
            return None
        props = data.get("properties") or {}
        return HubSpotContact(
            id=str(data["id"]),
            firstname=props.get("firstname") or "",
            lastname=props.get("lastname") or "",
            email=props.get("email") or "",
        )

    # ==================== Account ====================

    async def get_account_info(self) -> HubSpotAccountInfo:
        if self._account_info is None:
            data = await self.request_json("GET", "/account-info/v3/details")
            self._account_info = HubSpotAccountInfo(
                portal_id=data["portalId"],
                ui_domain=data.get("uiDomain") or "app.hubspot.com",
            )
        return self._account_info

    async def get_ticket_url(self, ticket_id: str) -> str:
        info = await self.get_account_info()
        return f"https://{info.ui_domain}/contacts/{info.portal_id}/record/0-5/{ticket_id}"

    # ==================== Attachments ====================

    async def get_ticket_attachments(self, ticket_id: str) -> list[HubSpotAttachment]:
        """Collect files attached to the ticket's notes.

        HubSpot attaches files to notes, not tickets. Each note and each file
        is fetched separately; a failure skips that note or file.
        """
        try:
            associations = await self.request_json(
                "GET", f"/crm/v4/objects/tickets/{ticket_id}/associations/notes"
            )
        except SourceError as e:
            logger.warning(f"Failed to list notes for HubSpot ticket {ticket_id}: {e}")
            return []

        attachments: list[HubSpotAttachment] = []
        for assoc in (associations or {}).get("results", []):
            note_id = assoc.get("toObjectId")
            try:
                note = await self.request_json(
                    "GET",
                    f"/crm/v3/objects/notes/{note_id}",
                    params={"properties": "hs_attachment_ids"},
                    allow_not_found=True,
                )
            except SourceError as e:
                logger.warning(f"Failed to fetch HubSpot note {note_id}: {e}")
                continue

            raw_ids = ((note or {}).get("properties") or {}).get("hs_attachment_ids")
            if not raw_ids:
                continue

            for file_id in [i.strip() for i in raw_ids.split(";") if i.strip()]:
                try:
                    attachments.append(await self._get_attachment(file_id))
                except (SourceError, KeyError) as e:
                    logger.warning(f"Failed to fetch HubSpot attachment {file_id}: {e}")

        return attachments

    async def _get_attachment(self, file_id: str) -> HubSpotAttachment:
        file = await self.request_json("GET", f"/files/v3/files/{file_id}")
        signed = await self.request_json(
            "GET",
            f"/files/v3/files/{file_id}/signed-url",
            params={"expirationSeconds": SIGNED_URL_EXPIRY_SECONDS},
        )
        return HubSpotAttachment(
            id=str(file["id"]),
            name=file.get("name") or "Unnamed file",
            size=file.get("size") or 0,
            type=file.get("type") or "application/octet-stream",
            url=signed["url"],
            extension=file.get("extension"),
        )

    async def download_attachment(self, url: str) -> bytes:
        response = await self.request_response("GET", url, authenticated=False)
        return response.content


def _next_after(data: dict[str, Any]) -> str | None:
    return ((data.get("paging") or {}).get("next") or {}).get("after")


def _epoch_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)
