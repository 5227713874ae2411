"""Cloud fallback identification.

GeminiCardIdentifier talks to the Gemini API; CloudDispatcher puts an
admission gate in front of it so the tick loop never has more than one
request outstanding and never calls more often than once per cooldown.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

import imageio.v3 as iio
from google import genai
from google.genai import types

from scanner import (
    CloudServiceError,
    IdentificationResult,
    QuotaExceededError,
    ResultSource,
    UNKNOWN_NUMBER,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"

UNRECOGNIZED = "DEEP_SCAN_REQUIRED"

SYSTEM_INSTRUCTION = f"""You identify Pokemon trading cards from a single photo of one card.
The photo has been cropped and flattened so the card fills the frame, upright.

1. Read the card name, the collector number (bottom left, e.g. 123/191) and the set.
2. If text is distorted or obscured, use the artwork, holo pattern, set symbol and layout.
3. Estimate the current market value of the English edition.

Return ONLY valid JSON.
If the card is completely unrecognizable, return {{"name": "{UNRECOGNIZED}", "marketValue": "---"}}."""

RECOVERY_SUFFIX = "\n[RECOVERY MODE: a previous attempt failed. Prioritize artwork and set symbols over text.]"

IDENTIFY_PROMPT = "Identify this card: name, set, collector number, rarity and market value."
RECOVERY_PROMPT = ("Previous attempt failed. Identify this card using all visual cues "
                   "(artwork, symbols) and give the most probable match.")

CARD_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING", "description": "Official card name."},
        "marketValue": {"type": "STRING", "description": "Current market value (e.g. $5.20)."},
        "set": {"type": "STRING", "description": "Card set name."},
        "number": {"type": "STRING", "description": "Collector number (e.g. 123/191)."},
        "rarity": {"type": "STRING", "description": "Card rarity tier."},
        "type": {"type": "STRING", "description": "Energy type."},
        "hp": {"type": "STRING", "description": "Hit points."},
    },
    "required": ["name", "marketValue"],
}


def _classify_error(error):
    """Map a client exception onto the scanner's cloud error types."""
    code = getattr(error, 'code', None)
    text = str(error)
    if code == 429 or '429' in text or 'RESOURCE_EXHAUSTED' in text:
        return QuotaExceededError(text)
    return CloudServiceError(text)


def _grounding_url(response):
    candidates = getattr(response, 'candidates', None) or []
    if not candidates:
        return None
    metadata = getattr(candidates[0], 'grounding_metadata', None)
    chunks = getattr(metadata, 'grounding_chunks', None) or []
    if not chunks:
        return None
    web = getattr(chunks[0], 'web', None)
    return getattr(web, 'uri', None)


def _parse_json(text):
    try:
        payload = json.loads((text or '{}').strip())
    except json.JSONDecodeError as e:
        raise CloudServiceError(f"Gemini returned non-JSON text: {e}") from e
    if not isinstance(payload, dict):
        raise CloudServiceError(f"Gemini returned {type(payload).__name__}, expected an object")
    return payload


class GeminiCardIdentifier:
    """Card identification through the google-genai client."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL, timeout: int = 30,
                 temperature: float = 0.2):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self._client = None
        self._initialized = False
        self._last_error: Optional[str] = None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def is_configured(self) -> bool:
        return self._initialized and self._client is not None

    def initialize(self) -> bool:
        """Create the Gemini client.

        Returns:
            True if the client is ready, False otherwise (see ``last_error``).
        """
        if not self.api_key or not self.api_key.strip():
            self._last_error = "API key is empty"
            logger.error(self._last_error)
            return False
        try:
            self._client = genai.Client(
                api_key=self.api_key,
                http_options=types.HttpOptions(timeout=int(self.timeout * 1000)),
            )
        except Exception as e:
            self._last_error = f"Error initializing Gemini client: {e}"
            logger.error(self._last_error)
            return False
        self._initialized = True
        self._last_error = None
        logger.info("Gemini identifier initialized with model: %s", self.model)
        return True

    def _generate(self, contents, system_instruction):
        if not self.is_configured() and not self.initialize():
            raise CloudServiceError(self._last_error or "Gemini client not configured")
        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    temperature=self.temperature,
                    tools=[types.Tool(google_search=types.GoogleSearch())],
                    response_mime_type="application/json",
                    response_schema=CARD_SCHEMA,
                ),
            )
        except Exception as e:
            raise _classify_error(e) from e
        payload = _parse_json(getattr(response, 'text', None))
        url = _grounding_url(response)
        if url and not payload.get('sourceUrl'):
            payload['sourceUrl'] = url
        return payload

    def identify(self, jpeg_bytes: bytes, retry: bool = False) -> Dict[str, Any]:
        """Identify a card from a JPEG-encoded canonical image.

        Args:
            jpeg_bytes: JPEG image of the rectified card
            retry: Send the recovery-mode instruction

        Returns:
            The decoded JSON record (may carry the unrecognized marker)

        Raises:
            QuotaExceededError: rate limit or quota exhausted
            CloudServiceError: any other failure
        """
        contents = [
            types.Part.from_bytes(data=jpeg_bytes, mime_type="image/jpeg"),
            RECOVERY_PROMPT if retry else IDENTIFY_PROMPT,
        ]
        instruction = SYSTEM_INSTRUCTION + (RECOVERY_SUFFIX if retry else "")
        return self._generate(contents, instruction)

    def lookup(self, query: str) -> Dict[str, Any]:
        """Look up a card from free text (name, number, set)."""
        return self._generate(
            f"Look up the Pokemon card '{query}'. Provide its card data and market value.",
            "Expert TCG assistant. Return card data and market value in JSON format.",
        )


def parse_identification(payload) -> Optional[IdentificationResult]:
    """Turn a service record into a result; None when no usable name came back."""
    if not payload:
        return None
    name = str(payload.get('name') or '').strip()
    if not name or name == UNRECOGNIZED:
        return None
    return IdentificationResult(
        name=name,
        set=payload.get('set') or 'Unknown',
        number=payload.get('number') or UNKNOWN_NUMBER,
        rarity=payload.get('rarity') or 'Common',
        type=payload.get('type') or 'Unknown',
        hp=str(payload.get('hp') or '0'),
        source=ResultSource.CLOUD,
        image_ref=payload.get('imageUrl') or '',
        market_value=payload.get('marketValue') or None,
        source_url=payload.get('sourceUrl') or None,
    )


def encode_jpeg(image, quality=85) -> bytes:
    return iio.imwrite("<bytes>", image, extension=".jpg", quality=quality)


class CloudDispatcher:
    """Rate-limited front for the cloud identifier.

    A call is admitted only when nothing is in flight and ``cooldown`` has
    elapsed since the previous admitted call. Refused calls are dropped,
    never queued.
    """

    def __init__(self, identifier, cooldown=4.0, executor=None, clock=time.monotonic,
                 jpeg_quality=85):
        self.identifier = identifier
        self.cooldown = cooldown
        self.jpeg_quality = jpeg_quality
        self._clock = clock
        self._executor = executor
        self._owns_executor = executor is None
        self._lock = threading.Lock()
        self._in_flight = False
        self._last_call = None
        self.calls = 0

    @property
    def in_flight(self):
        return self._in_flight

    def _admissible(self, now):
        if self._in_flight:
            return False
        return self._last_call is None or now - self._last_call >= self.cooldown

    def can_dispatch(self, now=None):
        now = self._clock() if now is None else now
        with self._lock:
            return self._admissible(now)

    def _admit(self, now):
        now = self._clock() if now is None else now
        with self._lock:
            if not self._admissible(now):
                return False
            self._in_flight = True
            self._last_call = now
            self.calls += 1
            return True

    def _release(self, *_):
        with self._lock:
            self._in_flight = False

    def _call(self, canonical, retry):
        jpeg = encode_jpeg(canonical, self.jpeg_quality)
        payload = self.identifier.identify(jpeg, retry=retry)
        result = parse_identification(payload)
        if result is None:
            logger.info("Cloud identification returned no usable name")
        else:
            logger.info("Cloud identified %s (%s)", result.name, result.number)
        return result

    def request_identification(self, canonical, retry=False, now=None):
        """Synchronous, gated call.

        Returns None when the gate refuses or the answer is inconclusive.
        Raises QuotaExceededError / CloudServiceError on failure.
        """
        if not self._admit(now):
            logger.debug("Cloud call refused: in flight or cooling down")
            return None
        try:
            return self._call(canonical, retry)
        finally:
            self._release()

    def submit(self, canonical, retry=False, now=None):
        """Gated asynchronous call; returns a Future, or None when refused."""
        if not self._admit(now):
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cloud-id")
        try:
            future = self._executor.submit(self._call, canonical, retry)
        except Exception:
            self._release()
            raise
        future.add_done_callback(self._release)
        return future

    def shutdown(self):
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
