"""
Place page scraping: turn a loaded place page into a PlaceRecord, and
collect place links from a search results page.

Selectors follow the current mapping application layout and are expected
to drift; everything here is best effort.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from place_harvester.data.job_queue import dedupe_urls
from place_harvester.data.models import Coordinates, PlaceRecord
from place_harvester.data.place_keys import extract_key_from_url, extract_place_slug
from place_harvester.utils.logging import get_business_logger


logger = get_business_logger('extraction')


PLACE_SCRIPT = """
() => {
    const main = document.querySelector('div[role="main"]');
    if (!main) return null;

    const text = (selector) => {
        const el = main.querySelector(selector);
        return el ? el.textContent.trim() : '';
    };

    const ratingEl = main.querySelector('div[role="img"][aria-label*="stars"]');
    const reviewsEl = main.querySelector('button[jsaction="pane.rating.moreReviews"]');
    const websiteEl = main.querySelector('a[data-item-id="authority"]');

    const amenities = {};
    document.querySelectorAll('div[role="region"][aria-label]').forEach(section => {
        const heading = section.querySelector('h2');
        const items = Array.from(section.querySelectorAll('li span[aria-label]'))
            .map(item => item.getAttribute('aria-label'))
            .filter(Boolean);
        if (heading && items.length) {
            amenities[heading.textContent.trim()] = items;
        }
    });

    const aboutEl = document.querySelector('div[aria-label^="About"]');
    const images = Array.from(main.querySelectorAll('button[jsaction*="heroHeaderImage"] img, img[src*="googleusercontent"]'))
        .map(img => img.src)
        .filter(src => src && src.startsWith('http'));

    return {
        url: window.location.href,
        name: text('h1'),
        address: text('button[data-item-id="address"]'),
        businessType: text('button[jsaction="pane.rating.category"]'),
        phone: text('button[data-item-id^="phone:tel"]'),
        website: websiteEl ? websiteEl.href : '',
        ratingLabel: ratingEl ? ratingEl.getAttribute('aria-label') : '',
        reviewsText: reviewsEl ? reviewsEl.textContent : '',
        amenityDetails: amenities,
        aboutText: aboutEl ? aboutEl.innerText.trim() : '',
        imageUrls: Array.from(new Set(images)).slice(0, 10)
    };
}
"""

COLLECT_SCRIPT = """
(selectors) => {
    const links = [];
    const websites = {};
    selectors.forEach(selector => {
        document.querySelectorAll(selector).forEach(el => {
            if (!el.href || !el.href.includes('/maps/place/')) return;
            links.push(el.href);
            const card = el.closest('div[role="article"], div.Nv2PK, div[jsaction*="navigationCard"]');
            const site = card && card.querySelector('a[data-tooltip="Open website"], a.CsEnBe[href^="http"]');
            if (site) websites[el.href] = site.href;
        });
    });
    return { links, websites };
}
"""

PLACE_LINK_SELECTORS = [
    'a[href*="/maps/place/"]',
    'div.Nv2PK a.hfpxzc',
    'a.hfpxzc[href*="/maps/place/"]',
    'div[jsaction*="navigationCard"] a[href*="/maps/place/"]',
]

COORDINATES_PATTERN = re.compile(r'@(-?\d+\.\d+),(-?\d+\.\d+)')
POSTAL_TAIL = re.compile(r'^(.*?)\s+([A-Za-z0-9]*\d[A-Za-z0-9 -]*)$')
MAP_PIN = re.compile(r'^[^\w]+\s*')


@dataclass
class CollectedLinks:
    """Place URLs found on a results page plus website links seen beside them."""
    urls: List[str] = field(default_factory=list)
    websites: Dict[str, str] = field(default_factory=dict)


def parse_coordinates(url: str) -> Coordinates:
    match = COORDINATES_PATTERN.search(url or '')
    if not match:
        return Coordinates()
    return Coordinates(lat=float(match.group(1)), lng=float(match.group(2)))


def parse_rating(label: str) -> Optional[float]:
    match = re.search(r'\d+(?:[.,]\d+)?', label or '')
    if not match:
        return None
    return float(match.group(0).replace(',', '.'))


def parse_review_count(text: str) -> int:
    digits = re.sub(r'[^0-9]', '', text or '')
    return int(digits) if digits else 0


def split_address(text: str) -> Union[str, Dict[str, str]]:
    """
    Split a one-line address into street, city, state, postal code and country.

    Addresses with fewer than three comma-separated parts are returned as is.
    """
    text = MAP_PIN.sub('', text or '').strip()
    parts = [part.strip() for part in text.split(',') if part.strip()]
    if len(parts) < 3:
        return text

    country = ''
    if len(parts) >= 4:
        country = parts.pop()

    region = parts.pop()
    city = parts.pop()
    street = ', '.join(parts)

    state, postal_code = region, ''
    match = POSTAL_TAIL.match(region)
    if match:
        state, postal_code = match.group(1), match.group(2).strip()

    return {
        'street': street,
        'city': city,
        'state': state,
        'postalCode': postal_code,
        'country': country,
    }


def page_key(url: str) -> str:
    """Identifier the page reports for itself: a structured id, else the place slug."""
    return extract_key_from_url(url) or extract_place_slug(url) or ''


def build_record(raw: Optional[Dict[str, Any]]) -> Optional[PlaceRecord]:
    """Turn the in-page script result into a record; ``None`` when the page had no place panel."""
    if not raw or not raw.get('name'):
        return None

    url = raw.get('url') or ''
    return PlaceRecord(
        place_id=page_key(url),
        name=raw.get('name', ''),
        address=split_address(raw.get('address', '')),
        coordinates=parse_coordinates(url),
        business_type=raw.get('businessType', ''),
        phone=raw.get('phone', ''),
        website=raw.get('website', ''),
        rating=parse_rating(raw.get('ratingLabel', '')),
        review_count=parse_review_count(raw.get('reviewsText', '')),
        amenity_details=raw.get('amenityDetails') or {},
        about_text=raw.get('aboutText', ''),
        image_urls=list(raw.get('imageUrls') or []),
        url=url,
    )


class PlaceExtractor:
    """Reads the place panel of the page currently shown in a tab."""

    async def extract(self, page) -> Optional[PlaceRecord]:
        """
        Extract the listing from ``page``.

        Returns:
            The record, or None when the page has no usable place panel
        """
        try:
            raw = await page.evaluate(PLACE_SCRIPT)
        except Exception as e:
            logger.warning(f"Place script failed: {e}")
            return None

        record = build_record(raw)
        if record is None:
            logger.info(f"No place panel found on {getattr(page, 'url', '')}")
        return record


async def collect_place_urls(page) -> CollectedLinks:
    """Gather place links (and their website links) from a results page."""
    result = await page.evaluate(COLLECT_SCRIPT, PLACE_LINK_SELECTORS) or {}
    urls = dedupe_urls(result.get('links') or [])
    logger.info(f"Collected {len(urls)} place URLs")
    return CollectedLinks(urls=urls, websites=dict(result.get('websites') or {}))
