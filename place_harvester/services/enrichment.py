"""
About-text summarization through a chat completions API.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import EnrichmentConfig
from place_harvester.data.models import PlaceRecord
from place_harvester.utils.errors import EnrichmentError, retry_on_error
from place_harvester.utils.logging import get_business_logger


logger = get_business_logger('enrichment')


@dataclass
class EnrichmentResult:
    """Outcome of one summarize call; ``processed`` is False on any failure."""
    processed: bool
    summary: Optional[str] = None
    error: Optional[str] = None
    original_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"processed": self.processed}
        if self.summary is not None:
            data["summary"] = self.summary
        if self.error is not None:
            data["error"] = self.error
        if self.original_text is not None:
            data["originalText"] = self.original_text
        return data


def describe_record(record: PlaceRecord) -> str:
    """About text plus amenity lists, the text that gets summarized."""
    parts = []
    if record.about_text:
        parts.append(record.about_text.strip())
    for heading, items in (record.amenity_details or {}).items():
        if isinstance(items, (list, tuple)):
            items = ', '.join(str(item) for item in items)
        parts.append(f"{heading}: {items}")
    return '\n'.join(part for part in parts if part)


class SummaryService:
    """
    Stateless ``summarize(text) -> result`` collaborator.

    ``summarize`` never raises; a missing API key, missing text or any API
    failure comes back as ``processed=False`` with a reason.
    """

    def __init__(self, config: Optional[EnrichmentConfig] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or EnrichmentConfig()
        self.session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()

        retry_strategy = Retry(
            total=self.config.retry_attempts,
            backoff_factor=1.0,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return session

    @property
    def configured(self) -> bool:
        return bool(self.config.api_key)

    def summarize(self, source: Union[PlaceRecord, str]) -> EnrichmentResult:
        """
        Summarize a record's about text (or a raw string).

        Args:
            source: Record or text to summarize

        Returns:
            EnrichmentResult with the summary, or the reason there is none
        """
        text = describe_record(source) if isinstance(source, PlaceRecord) else (source or '')
        text = text.strip()

        if not text:
            return EnrichmentResult(processed=False, error="No about text provided")

        if not self.configured:
            logger.warning("Summary requested but no API key is configured")
            return EnrichmentResult(processed=False, error="API key not configured")

        try:
            summary = self._complete(text)
        except (EnrichmentError, requests.RequestException, ValueError) as e:
            logger.error(f"Summarization failed: {e}")
            return EnrichmentResult(processed=False, error=str(e), original_text=text)

        logger.info(f"Summarized {len(text)} characters of about text")
        return EnrichmentResult(processed=True, summary=summary, original_text=text)

    @retry_on_error(max_attempts=2, delay=1.0, exceptions=(requests.ConnectionError, requests.Timeout))
    def _complete(self, text: str) -> str:
        response = self.session.post(
            self.config.api_url,
            headers={
                'Content-Type': 'application/json',
                'Authorization': f'Bearer {self.config.api_key}',
            },
            json={
                'model': self.config.model,
                'messages': [
                    {'role': 'system', 'content': self.config.system_prompt},
                    {'role': 'user', 'content': (
                        "Please analyze this business description and provide a concise "
                        f"summary of key features and amenities: {text}"
                    )},
                ],
                'max_tokens': self.config.max_tokens,
                'temperature': self.config.temperature,
            },
            timeout=self.config.timeout,
        )

        if response.status_code != 200:
            try:
                message = response.json().get('error', {}).get('message')
            except ValueError:
                message = None
            raise EnrichmentError(
                f"API error: {response.status_code} - {message or response.reason}",
                {"status_code": response.status_code}
            )

        data = response.json()
        try:
            content = data['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            raise EnrichmentError("Invalid response format from API")

        if not content:
            raise EnrichmentError("Empty summary returned")
        return content.strip()
