"""Text normalization and the unicode indexer for the synthesis engine."""

import json
import logging
import re
import unicodedata
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np

from .errors import EmptyUtteranceError
from .types import TextEncoding

log = logging.getLogger("tts.text")

AVAILABLE_LANGS = ("en", "ko", "es", "pt", "fr")
NEUTRAL_LANG = "na"

_EMOJI_RE = re.compile(
    "["
    "\U0001F600-\U0001F64F"  # emoticons
    "\U0001F300-\U0001F5FF"  # symbols & pictographs
    "\U0001F680-\U0001F6FF"  # transport & map
    "\U0001F700-\U0001F77F"
    "\U0001F780-\U0001F7FF"
    "\U0001F800-\U0001F8FF"
    "\U0001F900-\U0001F9FF"
    "\U0001FA00-\U0001FAFF"
    "☀-⛿"          # misc symbols
    "✀-➿"          # dingbats
    "\U0001F1E6-\U0001F1FF"  # flags
    "]+",
    flags=re.UNICODE,
)

_REPLACEMENTS = {
    "–": "-",
    "‑": "-",
    "—": "-",
    "_": " ",
    "“": '"',
    "”": '"',
    "‘": "'",
    "’": "'",
    "´": "'",
    "`": "'",
    "[": " ",
    "]": " ",
    "|": " ",
    "/": " ",
    "#": " ",
    "→": " ",
    "←": " ",
}

# Symbols with no spoken form
_DROP = ("♥", "☆", "♡", "©", "\\", "*", "~", "^")

_EXPANSIONS = {
    "@": " at ",
    "e.g.,": "for example, ",
    "i.e.,": "that is, ",
}

_SPACE_BEFORE_PUNCT_RE = re.compile(r" ([,.!?;:'])")
_REPEATED_QUOTES = (('""', '"'), ("''", "'"))
_TERMINAL_RE = re.compile(r"[.!?;:,'\"')\]}…。」』】〉》›»]$")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Clean text down to speakable characters. May return ''."""
    text = unicodedata.normalize("NFKD", text)
    text = _EMOJI_RE.sub("", text)
    for src, dst in _REPLACEMENTS.items():
        text = text.replace(src, dst)
    for sym in _DROP:
        text = text.replace(sym, "")
    for src, dst in _EXPANSIONS.items():
        text = text.replace(src, dst)
    text = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", text)
    for src, dst in _REPEATED_QUOTES:
        while src in text:
            text = text.replace(src, dst)
    return _WHITESPACE_RE.sub(" ", text).strip()


def preprocess_text(text: str, lang: Optional[str] = None) -> str:
    """Normalize, terminate and language-tag one utterance.

    Raises EmptyUtteranceError if nothing speakable is left.
    """
    body = normalize_text(text)
    if not body:
        raise EmptyUtteranceError(text)

    if not _TERMINAL_RE.search(body):
        body += "."

    tag = NEUTRAL_LANG
    if lang:
        lang = lang.strip().lower()
        if lang in AVAILABLE_LANGS:
            tag = lang
        else:
            log.warning("Unsupported language %r, using neutral tag", lang)
    return f"<{tag}>{body}</{tag}>"


def length_to_mask(lengths: Sequence[int], max_len: Optional[int] = None) -> np.ndarray:
    """float32 [batch, 1, max_len] mask, 1.0 where j < lengths[i]."""
    lengths = np.asarray(lengths, dtype=np.int64)
    if max_len is None:
        max_len = int(lengths.max()) if lengths.size else 0
    positions = np.arange(max_len, dtype=np.int64)
    mask = (positions[None, :] < lengths[:, None]).astype(np.float32)
    return mask[:, None, :]


class UnicodeIndexer:
    """Maps code points to vocabulary codes.

    The table is either a list indexed by code point or a mapping keyed
    by code point. Missing entries and -1 mean "unsupported" and encode
    as 0.
    """

    def __init__(self, table: Union[list, dict]):
        if isinstance(table, dict):
            table = {int(k): int(v) for k, v in table.items()}
        self._table = table

    @classmethod
    def from_file(cls, path: Path) -> "UnicodeIndexer":
        with open(path, encoding="utf-8") as f:
            return cls(json.load(f))

    def code(self, char: str) -> int:
        cp = ord(char)
        if isinstance(self._table, dict):
            value = self._table.get(cp, -1)
        else:
            value = self._table[cp] if cp < len(self._table) else -1
        return -1 if value is None else int(value)

    def encode(self, texts: Sequence[str], lang: Optional[str] = None) -> TextEncoding:
        """Preprocess and index a batch of strings."""
        processed = [preprocess_text(t, lang) for t in texts]
        lengths = [len(p) for p in processed]
        max_len = max(lengths)

        text_ids = np.zeros((len(processed), max_len), dtype=np.int64)
        unsupported: list[str] = []
        for i, text in enumerate(processed):
            for j, char in enumerate(text):
                code = self.code(char)
                if code < 0:
                    if char not in unsupported:
                        unsupported.append(char)
                    continue
                text_ids[i, j] = code

        if unsupported:
            log.warning("Unsupported characters mapped to 0: %s", "".join(unsupported))
        return TextEncoding(
            text_ids=text_ids,
            text_mask=length_to_mask(lengths, max_len),
            lengths=lengths,
            unsupported_chars=unsupported,
        )
