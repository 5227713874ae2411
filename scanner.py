import enum
import json
import logging
import os
import re
import string
import threading
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np
from scipy import ndimage
from skimage import exposure

logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

UNKNOWN_NUMBER = '???'

NAME_WHITELIST = string.ascii_letters + ' -'
NUMBER_WHITELIST = string.digits + '/' + string.ascii_letters

DEFAULT_CATALOG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)),
                                    'surging_sparks.json')

SPECIES_NAMES = (
    "Pikachu", "Charizard", "Blastoise", "Venusaur", "Mewtwo", "Mew", "Eevee",
    "Lugia", "Rayquaza", "Gengar", "Dragonite", "Arcanine", "Lucario", "Greninja",
    "Mimikyu", "Milotic", "Squirtle", "Bulbasaur", "Charmander", "Snorlax",
    "Lapras", "Ditto", "Gardevoir", "Sylveon", "Umbreon", "Espeon", "Tyranitar",
    "Alakazam", "Machamp", "Ho-Oh", "Kyogre", "Groudon", "Dialga", "Palkia",
    "Giratina", "Arceus", "Zacian", "Zamazenta", "Koraidon", "Miraidon",
    "Terapagos", "Exeggcute", "Exeggutor", "Hoothoot", "Noctowl", "Shroomish",
    "Breloom", "Budew", "Roselia", "Roserade", "Cottonee", "Whimsicott",
    "Petilil", "Lilligant", "Maractus", "Deerling", "Sawsbuck", "Grubbin",
    "Charjabug", "Vikavolt", "Dwebble", "Crustle", "Morelull", "Shiinotic",
    "Zarude", "Scovillain", "Ponyta", "Rapidash", "Moltres", "Victini",
    "Larvesta", "Volcarona", "Charcadet", "Ceruledge", "Eternatus", "Urshifu",
    "Calyrex", "Enamorus", "Pecharunt", "Iron Valiant", "Roaring Moon",
    "Walking Wake", "Iron Leaves", "Gouging Fire", "Raging Bolt",
)


# ============================================================
# ERRORS
# ============================================================

class ScannerError(Exception):
    """Base error for the card scanner."""


class ConfigurationError(ScannerError):
    """Invalid scanner configuration, raised at construction time."""


class CatalogError(ScannerError):
    """Catalog file missing or malformed."""


class CloudServiceError(ScannerError):
    """Cloud identification call failed (network, malformed response...)."""


class QuotaExceededError(CloudServiceError):
    """Cloud service refused the call because of rate limits or quota."""


# ============================================================
# CONFIGURATION
# ============================================================

def _check_region(name, region):
    if len(region) != 4:
        raise ConfigurationError(f"{name} must be (y0, y1, x0, x1), got {region!r}")
    y0, y1, x0, x1 = region
    if not (0.0 <= y0 < y1 <= 1.0 and 0.0 <= x0 < x1 <= 1.0):
        raise ConfigurationError(f"{name} fractions out of range: {region!r}")


@dataclass(frozen=True)
class ScannerConfig:
    """Plain configuration values for the whole pipeline.

    Regions are fractional ``(y0, y1, x0, x1)`` bounds of the canonical card.
    Times are in seconds of whatever clock drives the tick loop.
    """
    detect_width: int = 480
    min_area_fraction: float = 0.12
    aspect_band: Tuple[float, float] = (0.55, 0.90)
    lock_timeout: float = 5.0
    cloud_cooldown: float = 4.0
    tick_interval: float = 0.15
    canonical_size: Tuple[int, int] = (400, 560)
    padding_color: Tuple[int, int, int] = (0, 0, 0)
    name_region: Tuple[float, float, float, float] = (0.02, 0.11, 0.05, 0.75)
    number_region: Tuple[float, float, float, float] = (0.88, 0.98, 0.02, 0.42)
    ocr_upscale: float = 3.0
    binarize_threshold: int = 130
    name_whitelist: str = NAME_WHITELIST
    number_whitelist: str = NUMBER_WHITELIST
    max_name_distance: int = 1
    match_threshold: int = 4
    local_first: bool = True
    freeze_source: bool = False

    def __post_init__(self):
        lo, hi = self.aspect_band
        if not 0.0 < lo < hi <= 1.0:
            raise ConfigurationError(f"aspect_band must satisfy 0 < lo < hi <= 1, got {self.aspect_band!r}")
        width, height = self.canonical_size
        if width <= 0 or height <= 0:
            raise ConfigurationError(f"canonical_size must be positive, got {self.canonical_size!r}")
        if self.detect_width <= 0:
            raise ConfigurationError(f"detect_width must be positive, got {self.detect_width}")
        if not 0.0 < self.min_area_fraction < 1.0:
            raise ConfigurationError(f"min_area_fraction must be in (0, 1), got {self.min_area_fraction}")
        if self.lock_timeout <= 0:
            raise ConfigurationError(f"lock_timeout must be positive, got {self.lock_timeout}")
        if self.cloud_cooldown < 0:
            raise ConfigurationError(f"cloud_cooldown must not be negative, got {self.cloud_cooldown}")
        if self.tick_interval <= 0:
            raise ConfigurationError(f"tick_interval must be positive, got {self.tick_interval}")
        if self.ocr_upscale <= 0:
            raise ConfigurationError(f"ocr_upscale must be positive, got {self.ocr_upscale}")
        if not 0 <= self.binarize_threshold <= 255:
            raise ConfigurationError(f"binarize_threshold must be 0-255, got {self.binarize_threshold}")
        if self.max_name_distance < 0:
            raise ConfigurationError("max_name_distance must not be negative")
        if not self.name_whitelist or not self.number_whitelist:
            raise ConfigurationError("OCR whitelists must not be empty")
        _check_region('name_region', self.name_region)
        _check_region('number_region', self.number_region)


# ============================================================
# DATA MODEL
# ============================================================

Point = Tuple[float, float]


def _dist(a, b):
    return float(np.hypot(a[0] - b[0], a[1] - b[1]))


@dataclass(frozen=True)
class Quadrilateral:
    """Four card corners in frame-pixel coordinates."""
    tl: Point
    tr: Point
    bl: Point
    br: Point

    def as_array(self):
        """Corners clockwise from top-left (tl, tr, br, bl) as float32 4x2."""
        return np.array([self.tl, self.tr, self.br, self.bl], dtype=np.float32)

    @property
    def area(self):
        pts = self.as_array().astype(np.float64)
        x, y = pts[:, 0], pts[:, 1]
        return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)

    @property
    def aspect_ratio(self):
        """Mean short side over mean long side."""
        width = (_dist(self.tl, self.tr) + _dist(self.bl, self.br)) / 2.0
        height = (_dist(self.tl, self.bl) + _dist(self.tr, self.br)) / 2.0
        long_side = max(width, height)
        if long_side == 0:
            return 0.0
        return min(width, height) / long_side

    def scaled(self, sx, sy=None):
        sy = sx if sy is None else sy
        return Quadrilateral(*[(float(x * sx), float(y * sy))
                               for x, y in (self.tl, self.tr, self.bl, self.br)])


class ResultSource(enum.Enum):
    LOCAL = 'local'
    CLOUD = 'cloud'


@dataclass(frozen=True)
class ExtractedText:
    raw_name: str
    raw_number: str
    name: str = ''
    number: str = UNKNOWN_NUMBER


@dataclass(frozen=True)
class CatalogEntry:
    name: str
    set: str
    number: str
    rarity: str
    type: str
    hp: str
    image_ref: str = ''


@dataclass(frozen=True)
class IdentificationResult:
    name: str
    set: str
    number: str
    rarity: str
    type: str
    hp: str
    source: ResultSource
    image_ref: str = ''
    market_value: Optional[str] = None
    source_url: Optional[str] = None

    @classmethod
    def from_entry(cls, entry, source=ResultSource.LOCAL):
        return cls(name=entry.name, set=entry.set, number=entry.number,
                   rarity=entry.rarity, type=entry.type, hp=entry.hp,
                   source=source, image_ref=entry.image_ref)

    def to_dict(self):
        return {
            'name': self.name,
            'set': self.set,
            'number': self.number,
            'rarity': self.rarity,
            'type': self.type,
            'hp': self.hp,
            'source': self.source.value,
            'image_ref': self.image_ref,
            'market_value': self.market_value,
            'source_url': self.source_url,
        }


# ============================================================
# CATALOG
# ============================================================

def build_catalog(data):
    """Expand a set description into the full ordered tuple of entries.

    Cards listed under ``cards`` keep their own fields; every other slot up to
    ``total`` gets a placeholder. Numbers above ``printed_total`` are secret
    rares and are not zero-padded.
    """
    set_name = data['set']
    printed = int(data['printed_total'])
    total = int(data.get('total', printed))
    image_template = data.get('image_url', '')
    known = {int(card['n']): card for card in data.get('cards', [])}

    entries = []
    for n in range(1, total + 1):
        card = known.get(n, {})
        secret = n > printed
        entries.append(CatalogEntry(
            name=card.get('name') or (f"Secret Rare #{n}" if secret else f"{set_name} #{n:03d}"),
            set=set_name,
            number=f"{n}/{printed}" if secret else f"{n:03d}/{printed}",
            rarity=card.get('rarity') or ('Secret Rare' if secret else 'Common'),
            type=card.get('type') or 'Colorless',
            hp=card.get('hp') or '100',
            image_ref=image_template.format(n=n) if image_template else '',
        ))
    return tuple(entries)


def load_catalog(json_path=DEFAULT_CATALOG_PATH):
    """Load the bundled set catalog from JSON."""
    try:
        with open(json_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CatalogError(f"Cannot read catalog {json_path}: {e}") from e
    try:
        catalog = build_catalog(data)
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogError(f"Malformed catalog {json_path}: {e}") from e
    logger.info("Catalog: %d entries (%s)", len(catalog), data.get('set', '?'))
    return catalog


# ============================================================
# IMAGE HELPERS
# ============================================================

def _as_rgb(frame):
    """Return a 3-channel uint8 view of a frame (drops alpha, expands gray)."""
    img = np.asarray(frame)
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2RGB)
    if img.ndim == 3 and img.shape[2] == 4:
        return np.ascontiguousarray(img[:, :, :3])
    if img.ndim == 3 and img.shape[2] == 3:
        return img
    raise ValueError(f"Unsupported frame shape {img.shape}")


# ============================================================
# STAGE 1: BOUNDARY DETECTION
# ============================================================

APPROX_EPSILONS = (0.01, 0.02, 0.03, 0.04, 0.05, 0.06)


def order_corners(points):
    """Assign corner roles by coordinate sum/difference.

    tl has minimal x+y, br maximal x+y, tr minimal y-x, bl maximal y-x.
    Returns None when two roles land on the same vertex.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    s = pts[:, 0] + pts[:, 1]
    d = pts[:, 1] - pts[:, 0]
    idx = (int(np.argmin(s)), int(np.argmin(d)), int(np.argmax(d)), int(np.argmax(s)))
    if len(set(idx)) != 4:
        return None
    tl, tr, bl, br = (tuple(float(v) for v in pts[i]) for i in idx)
    return Quadrilateral(tl=tl, tr=tr, bl=bl, br=br)


def fit_quadrilateral(contour):
    """Smallest-epsilon polygon approximation that has exactly 4 convex vertices."""
    perimeter = cv2.arcLength(contour, True)
    if perimeter <= 0:
        return None
    for eps in APPROX_EPSILONS:
        approx = cv2.approxPolyDP(contour, eps * perimeter, True)
        if len(approx) < 4:
            return None
        if len(approx) == 4:
            if not cv2.isContourConvex(approx):
                return None
            return order_corners(approx)
    return None


def build_edge_mask(rgb, clahe):
    """Binary region/edge mask: adaptive threshold OR Canny, gaps closed."""
    gray = cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)
    if gray.max() > gray.min():
        gray = exposure.rescale_intensity(gray, out_range=(0, 255)).astype(np.uint8)
    equalized = clahe.apply(gray)
    blurred = cv2.GaussianBlur(equalized, (5, 5), 0)
    region = cv2.adaptiveThreshold(blurred, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                                   cv2.THRESH_BINARY_INV, 11, 2)
    edges = cv2.Canny(blurred, 50, 150)
    mask = (region > 0) | (edges > 0)
    closed = ndimage.binary_closing(mask, structure=np.ones((3, 3)), iterations=2)
    return closed.astype(np.uint8) * 255


class BoundaryDetector:
    """Find the largest card-shaped quadrilateral in a single frame.

    Stateless between calls: the same frame always yields the same answer.
    """

    def __init__(self, config=None):
        self.config = config or ScannerConfig()
        self._clahe = cv2.createCLAHE(clipLimit=3.0, tileGridSize=(8, 8))

    def detect(self, frame):
        rgb = _as_rgb(frame)
        h, w = rgb.shape[:2]
        if h < 8 or w < 8:
            return None

        scale = min(1.0, self.config.detect_width / float(w))
        if scale < 1.0:
            small = cv2.resize(rgb, (max(1, int(round(w * scale))), max(1, int(round(h * scale)))),
                               interpolation=cv2.INTER_AREA)
        else:
            small = rgb
        sh, sw = small.shape[:2]

        mask = build_edge_mask(small, self._clahe)
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        min_area = sh * sw * self.config.min_area_fraction
        lo, hi = self.config.aspect_band

        best = None
        for contour in contours:
            if cv2.contourArea(contour) < min_area:
                continue
            quad = fit_quadrilateral(contour)
            if quad is None:
                continue
            ratio = quad.aspect_ratio
            if not lo <= ratio <= hi:
                logger.debug("Rejected quad: aspect %.3f outside [%.2f, %.2f]", ratio, lo, hi)
                continue
            if best is None or quad.area > best.area:
                best = quad

        if best is None:
            return None
        return best.scaled(w / float(sw), h / float(sh))


# ============================================================
# STAGE 2: PERSPECTIVE RECTIFICATION
# ============================================================

def rectify(frame, quad, size=(400, 560), padding=(0, 0, 0), portrait=True):
    """Warp the quad region of a frame onto a fixed (width, height) canvas.

    Bilinear resampling; samples falling outside the frame take ``padding``.
    With ``portrait`` a quad whose top edge is longer than its left edge is
    turned a quarter so the card comes out upright-portrait.
    """
    rgb = _as_rgb(frame)
    dst_w, dst_h = size
    tl, tr, br, bl = quad.as_array()
    src_corners = np.array([tl, tr, br, bl], dtype=np.float32)
    if portrait and np.linalg.norm(tr - tl) > np.linalg.norm(bl - tl):
        src_corners = np.array([tr, br, bl, tl], dtype=np.float32)

    dst_corners = np.array([
        [0, 0], [dst_w - 1, 0], [dst_w - 1, dst_h - 1], [0, dst_h - 1]
    ], dtype=np.float32)

    M = cv2.getPerspectiveTransform(src_corners, dst_corners)
    return cv2.warpPerspective(rgb, M, (dst_w, dst_h),
                               flags=cv2.INTER_LINEAR,
                               borderMode=cv2.BORDER_CONSTANT,
                               borderValue=tuple(int(c) for c in padding))


class Rectifier:
    def __init__(self, config=None):
        self.config = config or ScannerConfig()

    def rectify(self, frame, quad):
        return rectify(frame, quad, size=self.config.canonical_size,
                       padding=self.config.padding_color)


# ============================================================
# OCR ENGINE MANAGEMENT
# ============================================================

class OCREngines:
    """
    Lazy-initialized holder for the text-recognition engine.
    Created once, shared by every extractor; the reader loads on first use.
    Loading and reading each run under their own lock.
    """
    def __init__(self, languages=('en',), gpu=False):
        self.languages = list(languages)
        self.gpu = gpu
        self._easyocr_reader = None
        self._load_lock = threading.Lock()
        self._read_lock = threading.Lock()

    @property
    def easyocr(self):
        if self._easyocr_reader is None:
            with self._load_lock:
                if self._easyocr_reader is None:
                    import easyocr
                    logger.info("Loading EasyOCR (%s)...", '+'.join(self.languages))
                    t = time.time()
                    self._easyocr_reader = easyocr.Reader(self.languages, gpu=self.gpu, verbose=False)
                    logger.info("EasyOCR ready in %.1fs", time.time() - t)
        return self._easyocr_reader

    def recognize(self, image, whitelist, single_line=True):
        """Read the text of one pre-binarized crop, restricted to ``whitelist``."""
        reader = self.easyocr
        with self._read_lock:
            results = reader.readtext(image, detail=0, allowlist=whitelist,
                                      paragraph=single_line)
        return ' '.join(str(r) for r in results)


# ============================================================
# STAGE 3: REGION TEXT EXTRACTION
# ============================================================

_SLASH_NUMBER = re.compile(r'(\d{1,3})\s*/\s*(\d{1,3})')
_CODE_NUMBER = re.compile(r'\b(?=[A-Za-z0-9]*[A-Za-z])([A-Za-z0-9]{2,5}\d{1,3})\b')


def normalize_whitespace(text):
    return re.sub(r'\s+', ' ', text or '').strip()


def clean_alpha(text):
    """Letters and single spaces only."""
    return normalize_whitespace(re.sub(r'[^A-Za-z\s]', ' ', text or ''))


def crop_region(image, region):
    y0f, y1f, x0f, x1f = region
    h, w = image.shape[:2]
    return image[int(h * y0f):int(h * y1f), int(w * x0f):int(w * x1f)]


def binarize_region(crop, upscale=3.0, threshold=130):
    """Upsample, luminance grayscale, fixed threshold -> 0/255 image."""
    if crop.size == 0:
        return np.zeros((0, 0), dtype=np.uint8)
    big = cv2.resize(crop, None, fx=upscale, fy=upscale, interpolation=cv2.INTER_CUBIC)
    gray = cv2.cvtColor(big, cv2.COLOR_RGB2GRAY) if big.ndim == 3 else big
    _, binary = cv2.threshold(gray, threshold, 255, cv2.THRESH_BINARY)
    return binary


def levenshtein(s1, s2):
    if len(s1) < len(s2):
        return levenshtein(s2, s1)
    if len(s2) == 0:
        return len(s1)
    prev = range(len(s2) + 1)
    for i, c1 in enumerate(s1):
        curr = [i + 1]
        for j, c2 in enumerate(s2):
            curr.append(min(curr[j] + 1, prev[j + 1] + 1, prev[j] + (c1 != c2)))
        prev = curr
    return prev[len(s2)]


def match_species(text, species=SPECIES_NAMES, max_distance=1):
    """Find a known species in OCR text, word by word.

    Exact case-insensitive hits win immediately. Otherwise the closest word
    within ``max_distance`` edits is accepted (first species on ties).
    Adjacent word pairs are tried too, for two-word names.
    """
    words = [re.sub(r'[^A-Za-z-]', '', w) for w in (text or '').split()]
    words = [w for w in words if w]
    if not words:
        return None
    candidates = words + [f"{a} {b}" for a, b in zip(words, words[1:])]

    by_lower = {}
    for s in species:
        by_lower.setdefault(s.lower(), s)
    for cand in candidates:
        hit = by_lower.get(cand.lower())
        if hit:
            return hit

    best, best_d = None, max_distance + 1
    for cand in candidates:
        if len(cand) < 3:
            continue
        low = cand.lower()
        for s in species:
            if abs(len(s) - len(cand)) > max_distance:
                continue
            d = levenshtein(low, s.lower())
            if d < best_d:
                best, best_d = s, d
    return best


def parse_card_number(text):
    """First collector number in the text, or None.

    ``036 / 191`` becomes ``036/191``; promo codes like ``svp085`` are
    upper-cased.
    """
    m = _SLASH_NUMBER.search(text or '')
    if m:
        return f"{m.group(1)}/{m.group(2)}"
    m = _CODE_NUMBER.search(text or '')
    if m:
        return m.group(1).upper()
    return None


class RegionTextExtractor:
    """Read the name band and the number band of a canonical card."""

    def __init__(self, recognizer, config=None, species=SPECIES_NAMES):
        self.recognizer = recognizer
        self.config = config or ScannerConfig()
        self.species = tuple(species)

    def _read(self, canonical, region, whitelist):
        crop = crop_region(canonical, region)
        binary = binarize_region(crop, self.config.ocr_upscale, self.config.binarize_threshold)
        if binary.size == 0:
            return ''
        return normalize_whitespace(self.recognizer.recognize(binary, whitelist, single_line=True))

    def extract(self, canonical):
        cfg = self.config
        raw_name = self._read(canonical, cfg.name_region, cfg.name_whitelist)
        raw_number = self._read(canonical, cfg.number_region, cfg.number_whitelist)

        name = match_species(raw_name, self.species, cfg.max_name_distance) or ''
        if not name and len(raw_name) > 2:
            name = clean_alpha(raw_name)
        number = parse_card_number(raw_number) or UNKNOWN_NUMBER

        logger.debug("OCR name=%r -> %r, number=%r -> %r", raw_name, name, raw_number, number)
        return ExtractedText(raw_name=raw_name, raw_number=raw_number, name=name, number=number)


# ============================================================
# STAGE 4: CATALOG MATCHING
# ============================================================

def _normalize_number(number):
    number = re.sub(r'\s', '', number or '')
    return '' if number == UNKNOWN_NUMBER else number


def score_entry(name, number, entry):
    """Weighted score of one catalog entry.

    ``name`` is expected lower-cased and ``number`` whitespace-free.
    Exact number +10, else same numerator +5; exact name +8, else
    containment either way +4.
    """
    score = 0
    card_number = _normalize_number(entry.number)
    if number:
        if card_number == number:
            score += 10
        elif '/' in number and card_number.split('/')[0] == number.split('/')[0]:
            score += 5
    if name:
        card_name = entry.name.lower()
        if card_name == name:
            score += 8
        elif name in card_name or card_name in name:
            score += 4
    return score


def rank_catalog(name, number, catalog):
    """Best (entry, score) over the catalog; the first maximum wins."""
    best, best_score = None, 0
    for entry in catalog:
        score = score_entry(name, number, entry)
        if score > best_score:
            best, best_score = entry, score
    return best, best_score


def match_catalog(extracted, catalog, min_score=4):
    name = (extracted.name or '').lower().strip()
    number = _normalize_number(extracted.number)
    if not name and not number:
        return None
    entry, score = rank_catalog(name, number, catalog)
    if entry is None or score < min_score:
        logger.debug("Catalog match inconclusive for name=%r number=%r (score %d)", name, number, score)
        return None
    logger.debug("Catalog match %s %s (score %d)", entry.name, entry.number, score)
    return entry
