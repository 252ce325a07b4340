"""Pydantic models for the convocation RFID tracker.

Tag records, request/response schemas and read-side reports. Field names are
snake_case in Python and camelCase on the wire, matching what the station
apps and handheld bridges already send and parse.
"""

from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Base model serialised with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TagType(str, Enum):
    """Kinds of encoded tag."""

    GRADUATE = "graduate"
    BOX = "box"


class TagStatus(str, Enum):
    """Coarse lifecycle phase of a tag."""

    ENCODED = "encoded"
    SCANNED = "scanned"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    RETURNED = "returned"
    VOID = "void"


class Station(str, Enum):
    """Physical checkpoints, in pipeline order."""

    ENCODING = "encoding"
    PACKING = "packing"
    DISPATCH_VENUE = "dispatch-venue"
    REGISTRATION = "registration"
    GOWN_ISSUE = "gown-issue"
    GOWN_RETURN = "gown-return"
    CERTIFICATE_COLLECTION = "certificate-collection"
    RETURN_HO = "return-ho"
    ADDRESS_LABEL = "address-label"
    FINAL_DISPATCH = "final-dispatch"
    HANDOVER = "handover"


class DispatchMethod(str, Enum):
    """Carriers used at final dispatch."""

    DTDC = "DTDC"
    INDIA_POST = "India Post"
    HAND_DELIVERY = "Hand Delivery"


class Placement(str, Enum):
    """Where a tag sits relative to a station under reconciliation."""

    ON_TRACK = "on-track"
    ADVANCED = "advanced"
    NOT_YET_ARRIVED = "not-yet-arrived"


# --- Tag Records ---


class ScanRecord(CamelModel):
    """One entry of a tag's audit trail."""

    station: Station
    timestamp: datetime
    scanned_by: str
    action: str
    notes: Optional[str] = None


class RfidTag(CamelModel):
    """A physical tag as stored in the record backend."""

    id: Optional[str] = Field(None, description="Backend record ID, assigned on create")
    epc: str
    type: TagType
    convocation_number: Optional[str] = None
    box_id: Optional[str] = None
    box_label: Optional[str] = None
    box_contents: Optional[list[str]] = None
    graduate_name: Optional[str] = None
    tito_ticket_id: Optional[int] = None
    tito_ticket_slug: Optional[str] = None
    status: TagStatus = TagStatus.ENCODED
    current_station: Station = Station.ENCODING
    encoded_at: datetime
    encoded_by: str
    last_scan_at: Optional[datetime] = None
    last_scan_by: Optional[str] = None
    last_scan_station: Optional[Station] = None
    scan_history: list[ScanRecord] = Field(default_factory=list)
    version: int = Field(0, description="Optimistic concurrency counter")

    @property
    def is_void(self) -> bool:
        return self.status == TagStatus.VOID


class TagPatch(CamelModel):
    """Partial update of a tag; unset fields are left untouched."""

    status: Optional[TagStatus] = None
    current_station: Optional[Station] = None
    last_scan_at: Optional[datetime] = None
    last_scan_by: Optional[str] = None
    last_scan_station: Optional[Station] = None
    scan_history: Optional[list[ScanRecord]] = None
    box_contents: Optional[list[str]] = None


# --- Request Models ---


class EncodeRequest(CamelModel):
    """Request body for encoding a new tag."""

    epc: str = Field(..., min_length=1, description="EPC or WD01 read")
    type: TagType
    convocation_number: Optional[str] = Field(None, description="Required for graduate tags")
    box_id: Optional[str] = Field(None, description="Required for box tags without a BOX- EPC")
    box_label: Optional[str] = None
    encoded_by: str = Field(..., min_length=1)


class ScanRequest(CamelModel):
    """Request body for a single station scan."""

    epc: str = Field(..., min_length=1)
    station: Station
    scanned_by: str = Field(..., min_length=1)
    action: Optional[str] = None
    notes: Optional[str] = None


class BulkScanRequest(CamelModel):
    """Request body for scanning many tags at one station."""

    epcs: list[str] = Field(..., min_length=1, max_length=100)
    station: Station
    scanned_by: str = Field(..., min_length=1)
    action: Optional[str] = None
    notes: Optional[str] = None


class DispatchRequest(CamelModel):
    """Request body for final dispatch; box EPCs dispatch their contents."""

    epcs: list[str] = Field(..., min_length=1)
    dispatched_by: str = Field(..., min_length=1)
    tracking_number: Optional[str] = None
    dispatch_method: Optional[DispatchMethod] = None
    notes: Optional[str] = None


class HandoverRequest(CamelModel):
    """Request body for handing tags over to a recipient."""

    epcs: list[str] = Field(..., min_length=1)
    handover_to: str = Field(..., min_length=1)
    handover_by: str = Field(..., min_length=1)
    notes: Optional[str] = None


class VoidRequest(CamelModel):
    """Request body for voiding a tag."""

    epc: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    voided_by: str = Field(..., min_length=1)


class BoxAddRequest(CamelModel):
    """Request body for adding items to a box."""

    item_epcs: list[str] = Field(..., min_length=1)


class BatchVerifyRequest(CamelModel):
    """Request body for verifying many reads at once."""

    epcs: list[str] = Field(..., min_length=1)


# --- Enrichment ---


class TitoTicket(BaseModel):
    """Ticket fields the tracker copies onto graduate tags."""

    id: int
    slug: str
    name: Optional[str] = None
    tag_names: list[str] = Field(default_factory=list)


class GraduateIdentity(BaseModel):
    """Graduate row from the Airtable graduates table."""

    convocation_number: str
    name: Optional[str] = None
    email: Optional[str] = None
    course: Optional[str] = None


# --- Operation Results ---


class TitoCheckinResult(CamelModel):
    """Outcome of the best-effort ticket check-in side call."""

    success: bool
    error: Optional[str] = None


class ScanOutcome(CamelModel):
    """Result of one successful station transition."""

    tag: RfidTag
    tito_checkin: Optional[TitoCheckinResult] = None


class BulkScanItem(CamelModel):
    """Per-EPC result inside a bulk operation."""

    epc: str
    success: bool
    tag: Optional[RfidTag] = None
    tito_checkin: Optional[TitoCheckinResult] = None
    error: Optional[str] = None


class BulkScanSummary(CamelModel):
    total: int
    successful: int
    failed: int
    tito_checkins: int


class BulkScanResult(CamelModel):
    """Partial-success batch result; failures are data, not exceptions."""

    results: list[BulkScanItem]
    summary: BulkScanSummary


class BoxContents(CamelModel):
    box: RfidTag
    items: list[RfidTag]


class VerifyResult(CamelModel):
    """Lookup result for one scanned string."""

    found: bool
    tag: Optional[RfidTag] = None
    matched_epc: Optional[str] = Field(None, description="Identifier that matched after fallbacks")
    box_items: Optional[list[RfidTag]] = None
    message: Optional[str] = None


class BatchVerifyItem(CamelModel):
    epc: str
    found: bool
    tag: Optional[RfidTag] = None
    error: Optional[str] = None


class BatchVerifySummary(CamelModel):
    total: int
    found: int
    not_found: int


class BatchVerifyResult(CamelModel):
    results: list[BatchVerifyItem]
    summary: BatchVerifySummary


class EncodedCheck(CamelModel):
    encoded: bool
    tag: Optional[RfidTag] = None


# --- Read-side Reports ---


class RecentScan(ScanRecord):
    """Scan record flattened across tags for the dashboard feed."""

    epc: str


class BoxSummary(CamelModel):
    total_boxes: int = 0
    items_in_boxes: int = 0


class DashboardStats(CamelModel):
    """Population-wide counts for the control-room dashboard."""

    total_tags: int
    graduate_tags: int
    box_tags: int
    encoded: int
    scanned: int
    dispatched: int
    delivered: int
    returned: int
    void: int
    station_breakdown: dict[Station, int]
    recent_scans: list[RecentScan]
    box_summary: BoxSummary


class ReconciliationItem(CamelModel):
    epc: str
    type: TagType
    graduate_name: Optional[str] = None
    convocation_number: Optional[str] = None
    status: TagStatus
    current_station: Station
    last_scan_at: Optional[datetime] = None
    scanned_at_station: bool = False


class ReconciliationCounts(CamelModel):
    on_track: int = 0
    advanced: int = 0
    not_yet_arrived: int = 0


class ReconciliationReport(CamelModel):
    """Expected-versus-actual view of one station.

    Every non-void tag lands in exactly one of ``on_track``, ``advanced`` or
    ``not_yet_arrived``. ``skipped`` lists advanced tags that never recorded a
    scan at the station.
    """

    station: Station
    total_tags: int
    void_tags: int
    scanned_at_station: int
    counts: ReconciliationCounts
    on_track: list[ReconciliationItem]
    advanced: list[ReconciliationItem]
    not_yet_arrived: list[ReconciliationItem]
    skipped: list[ReconciliationItem]


# --- Envelopes ---


class ApiResponse(CamelModel, Generic[T]):
    """Standard response envelope: a success flag plus data or an error."""

    success: bool = True
    data: Optional[T] = None
    error: Optional[str] = None
    message: Optional[str] = None


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    ok: bool = True
    store_ok: bool
    mqtt_connected: bool
    cache_age_seconds: Optional[int] = None
    uptime_seconds: int = 0
