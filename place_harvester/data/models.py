"""
Data models for jobs, extracted place records and session snapshots.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List, Tuple, Union

from place_harvester.utils.errors import ValidationError


class JobStatus(Enum):
    """Job lifecycle status."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """One target URL to visit and extract."""
    url: str
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    result_key: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def id(self) -> str:
        return self.url

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "resultKey": self.result_key,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        return cls(
            url=data["url"],
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            retry_count=int(data.get("retryCount", 0)),
            result_key=data.get("resultKey"),
            last_error=data.get("lastError"),
        )


@dataclass
class Coordinates:
    """Latitude/longitude pair."""
    lat: Optional[float] = None
    lng: Optional[float] = None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Coordinates':
        if not data:
            return cls()
        return cls(lat=_optional_float(data.get("lat")), lng=_optional_float(data.get("lng")))


@dataclass
class PlaceRecord:
    """
    Business listing extracted from a place page.

    ``address`` is either the raw one-line address or a mapping with
    ``street``, ``city``, ``state``, ``postalCode`` and ``country``.
    """
    place_id: str
    name: str = ""
    address: Union[str, Dict[str, str]] = ""
    coordinates: Coordinates = field(default_factory=Coordinates)
    business_type: str = ""
    phone: str = ""
    website: str = ""
    rating: Optional[float] = None
    review_count: int = 0
    amenity_details: Dict[str, Any] = field(default_factory=dict)
    about_text: str = ""
    image_urls: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    url: str = ""

    def validate(self) -> None:
        """
        Check the record carries an identifying key.

        Raises:
            ValidationError: If place_id is empty
        """
        if not self.place_id or not str(self.place_id).strip():
            raise ValidationError("Record has no place id", {"name": self.name, "url": self.url})

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation (camelCase keys)."""
        data = {
            "placeId": self.place_id,
            "name": self.name,
            "address": self.address,
            "coordinates": self.coordinates.to_dict(),
            "businessType": self.business_type,
            "phone": self.phone,
            "website": self.website,
            "rating": self.rating,
            "reviewCount": self.review_count,
            "amenityDetails": self.amenity_details,
            "aboutText": self.about_text,
            "imageUrls": list(self.image_urls),
            "url": self.url,
        }
        if self.summary is not None:
            data["summary"] = self.summary
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlaceRecord':
        if not isinstance(data, dict):
            raise ValidationError("Record payload must be a mapping", {"type": type(data).__name__})

        review_count = data.get("reviewCount") or 0
        try:
            review_count = int(review_count)
        except (TypeError, ValueError):
            review_count = 0

        return cls(
            place_id=str(data.get("placeId") or ""),
            name=data.get("name") or "",
            address=data.get("address") or "",
            coordinates=Coordinates.from_dict(data.get("coordinates")),
            business_type=data.get("businessType") or "",
            phone=data.get("phone") or "",
            website=data.get("website") or "",
            rating=_optional_float(data.get("rating")),
            review_count=review_count,
            amenity_details=dict(data.get("amenityDetails") or {}),
            about_text=data.get("aboutText") or "",
            image_urls=list(data.get("imageUrls") or []),
            summary=data.get("summary"),
            url=data.get("url") or "",
        )


@dataclass
class SessionSnapshot:
    """
    Serializable copy of shared session state exchanged between contexts.

    Maps travel as ordered ``[key, value]`` pair lists.
    """
    collected_urls: List[str] = field(default_factory=list)
    processed_data: List[Tuple[str, PlaceRecord]] = field(default_factory=list)
    url_to_place_id: List[Tuple[str, str]] = field(default_factory=list)
    is_processing: bool = False
    current_url: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "collectedUrls": list(self.collected_urls),
            "processedData": [[place_id, record.to_dict()] for place_id, record in self.processed_data],
            "urlToPlaceId": [[url, place_id] for url, place_id in self.url_to_place_id],
            "isProcessing": self.is_processing,
            "currentUrl": self.current_url,
        }

    @classmethod
    def from_wire(cls, data: Optional[Dict[str, Any]]) -> 'SessionSnapshot':
        """
        Parse a wire snapshot; missing fields default to empty.

        Raises:
            ValidationError: If a pair list is malformed
        """
        if not data:
            return cls()

        try:
            processed = [
                (str(place_id), PlaceRecord.from_dict(record))
                for place_id, record in data.get("processedData") or []
            ]
            mapping = [(str(url), str(place_id)) for url, place_id in data.get("urlToPlaceId") or []]
        except (TypeError, ValueError) as e:
            raise ValidationError("Malformed snapshot", {"error": str(e)})

        return cls(
            collected_urls=[str(url) for url in data.get("collectedUrls") or []],
            processed_data=processed,
            url_to_place_id=mapping,
            is_processing=bool(data.get("isProcessing", False)),
            current_url=data.get("currentUrl"),
        )


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
