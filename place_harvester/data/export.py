"""
Tabular export of completed place records.
"""

import csv
import io
import json
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from place_harvester.data.models import PlaceRecord
from place_harvester.utils.logging import get_business_logger


logger = get_business_logger('export')


CSV_HEADERS = [
    'Name', 'Business Type', 'Street Address', 'City', 'State/Province',
    'Postal Code', 'Country', 'Phone', 'Rating', 'Review Count', 'Latitude',
    'Longitude', 'Place ID', 'Website URL', 'Summary', 'Maps URL'
]


def _address_parts(address: Union[str, dict]) -> List[str]:
    """Street, city, state, postal code, country."""
    if isinstance(address, dict):
        return [
            address.get('street') or '',
            address.get('city') or '',
            address.get('state') or '',
            address.get('postalCode') or '',
            address.get('country') or '',
        ]
    return [address or '', '', '', '', '']


def _cell(value) -> str:
    if value is None:
        return ''
    return str(value)


def record_to_row(url: str, record: PlaceRecord) -> List[str]:
    row = [record.name, record.business_type]
    row.extend(_address_parts(record.address))
    row.extend([
        record.phone,
        record.rating,
        record.review_count,
        record.coordinates.lat,
        record.coordinates.lng,
        record.place_id,
        record.website,
        record.summary,
        url,
    ])
    return [_cell(value) for value in row]


def export_to_csv(records: Iterable[Tuple[str, PlaceRecord]]) -> str:
    """
    Render (url, record) pairs as CSV text with every cell quoted.

    Returns:
        CSV text including the header row
    """
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(CSV_HEADERS)

    count = 0
    for url, record in records:
        writer.writerow(record_to_row(url, record))
        count += 1

    logger.info(f"Exported {count} records to CSV")
    return output.getvalue()


def export_to_json(records: Iterable[Tuple[str, PlaceRecord]]) -> str:
    data = [{"mapsUrl": url, **record.to_dict()} for url, record in records]
    return json.dumps(data, indent=2, ensure_ascii=False)


def default_export_name(now: Optional[datetime] = None) -> str:
    """``locations_YYYYMMDD_HHMM.csv``"""
    now = now or datetime.now()
    return f"locations_{now.strftime('%Y%m%d_%H%M')}.csv"


def write_csv(records: Iterable[Tuple[str, PlaceRecord]], path: Union[str, Path]) -> Path:
    path = Path(path)
    if path.is_dir():
        path = path / default_export_name()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(export_to_csv(records), encoding='utf-8')
    logger.info(f"CSV written to {path}")
    return path
