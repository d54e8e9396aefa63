"""Structural parsing of raw product names."""

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedName:
    """Structured view of a product name."""

    brand_guess: str
    volume_ml: Optional[float]
    package_count: int
    tokens: Tuple[str, ...]
    normalized_name: str
    descriptors: Tuple[str, ...] = ()


EMPTY_PARSE = ParsedName("", None, 1, (), "", ())


@dataclass(frozen=True)
class ParserConfig:
    """
    Lookup tables used by NameParser.

    Volume patterns are tried in order and the first match wins; the matched
    unit is looked up in unit_to_ml. Package patterns work the same way with
    the count in group 1.
    """

    unit_to_ml: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType({
            "ml": 1.0,
            "m": 1.0,
            "l": 1000.0,
            "liter": 1000.0,
            "litre": 1000.0,
            "oz": 29.5735,
            "ounce": 29.5735,
            "gallon": 3785.41,
            "gal": 3785.41,
            "pint": 473.176,
            "pt": 473.176,
            "quart": 946.353,
            "qt": 946.353,
        })
    )
    volume_patterns: Tuple[str, ...] = (
        r"(\d+(?:\.\d+)?)\s*(ml|m)\b",
        r"(\d+(?:\.\d+)?)\s*(liter|litre|l)\b",
        r"(\d+(?:\.\d+)?)\s*(ounce|oz)\b",
        r"(\d+(?:\.\d+)?)\s*(gallon|gal)\b",
        r"(\d+(?:\.\d+)?)\s*(pint|pt)\b",
        r"(\d+(?:\.\d+)?)\s*(quart|qt)\b",
    )
    package_patterns: Tuple[str, ...] = (
        r"(\d+)\s*pk",
        r"(\d+)\s*pack",
        r"(\d+)\s*-\s*pack",
        r"(\d+)\s*bottle",
        r"(\d+)\s*btl",
        r"case\s*of\s*(\d+)",
        r"(\d+)\s*ct",
        r"(\d+)\s*count",
    )
    # Normalized spelling; multi-word phrases are matched before single words
    known_brands: Tuple[str, ...] = (
        "grey goose", "jack daniels", "makers mark", "jim beam", "johnnie walker",
        "jose cuervo", "don julio", "captain morgan", "crown royal", "stella artois",
        "dos equis", "modelo especial", "corona extra", "bud light", "miller lite",
        "coors light", "havana club", "remy martin", "grand marnier",
        "southern comfort", "ketel one", "titos", "patron", "modelo", "corona",
        "budweiser", "heineken", "guinness", "absolut", "smirnoff", "bacardi",
        "tanqueray", "bombay", "hendricks", "ciroc", "belvedere", "skyy",
        "jameson", "chivas", "glenlivet", "glenfiddich", "macallan", "lagavulin",
        "dewars", "buchanans", "casamigos", "espolon", "olmeca", "sauza",
        "diplomatico", "zacapa", "appleton", "brugal", "hennessy", "courvoisier",
        "martell", "jagermeister", "aperol", "campari", "cointreau", "kahlua",
        "baileys", "fireball", "malibu", "midori", "pernod", "avua", "paladar",
    )
    brand_variants: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({
            "gray goose": "grey goose",
            "greygoose": "grey goose",
            "jack daniel": "jack daniels",
            "johnny walker": "johnnie walker",
        })
    )
    measure_words: Tuple[str, ...] = (
        "ml", "liter", "litre", "oz", "ounce", "gallon", "gal", "pint", "pt",
        "quart", "qt", "pk", "pack", "bottle", "bottles", "btl", "case", "ct",
        "count",
    )
    stop_words: Tuple[str, ...] = ("the", "an", "of", "for", "and", "or")


DEFAULT_PARSER_CONFIG = ParserConfig()

_APOSTROPHES = re.compile(r"['’`]")
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


class NameParser:
    """Extracts brand, volume, package count and tokens from a product name."""

    def __init__(self, config: ParserConfig = DEFAULT_PARSER_CONFIG):
        self.config = config
        self._volume_patterns = [re.compile(p, re.IGNORECASE) for p in config.volume_patterns]
        self._package_patterns = [re.compile(p, re.IGNORECASE) for p in config.package_patterns]
        # Longest phrases first so "corona extra" wins over "corona"
        phrases = set(config.known_brands) | set(config.brand_variants)
        self._brand_patterns = [
            (phrase, re.compile(rf"\b{re.escape(phrase)}\b"))
            for phrase in sorted(phrases, key=lambda p: (-len(p.split()), -len(p)))
        ]
        self._skip_words = frozenset(config.measure_words) | frozenset(config.stop_words)

    def parse(self, name) -> ParsedName:
        """
        Parse a raw product name.

        Never raises: None, non-string or blank input gives an empty parse.
        """
        if not isinstance(name, str) or not name.strip():
            return EMPTY_PARSE

        normalized = self.normalize(name)
        tokens = tuple(t for t in normalized.split(" ") if len(t) > 1)
        descriptors = tuple(
            t for t in tokens if not t[0].isdigit() and t not in self._skip_words
        )

        return ParsedName(
            brand_guess=self._extract_brand(normalized, tokens),
            volume_ml=self.extract_volume(name),
            package_count=self.extract_package_count(name),
            tokens=tokens,
            normalized_name=normalized,
            descriptors=descriptors,
        )

    @staticmethod
    def normalize(name: str) -> str:
        """Lowercase, drop apostrophes, turn other punctuation into spaces."""
        text = _APOSTROPHES.sub("", name.lower())
        text = _NON_WORD.sub(" ", text)
        return _WHITESPACE.sub(" ", text).strip()

    def extract_volume(self, text: str) -> Optional[float]:
        """Return the first volume found, in milliliters."""
        for pattern in self._volume_patterns:
            match = pattern.search(text)
            if not match:
                continue
            unit = match.group(2).lower()
            factor = self.config.unit_to_ml.get(unit)
            if factor is None:
                logger.debug(f"No conversion for unit {unit!r}, treating as ml")
                factor = 1.0
            return float(match.group(1)) * factor
        return None

    def extract_package_count(self, text: str) -> int:
        for pattern in self._package_patterns:
            match = pattern.search(text)
            if match:
                return int(match.group(1))
        return 1

    def _extract_brand(self, normalized: str, tokens: Tuple[str, ...]) -> str:
        for phrase, pattern in self._brand_patterns:
            if pattern.search(normalized):
                return self.config.brand_variants.get(phrase, phrase)
        return " ".join(tokens[:2])


name_parser = NameParser()
