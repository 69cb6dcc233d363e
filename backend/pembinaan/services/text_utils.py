"""
Text normalization shared by the catalog and the matcher.

Both sides of every comparison go through the same functions, so a catalog
name and a report that differ only in case or spacing compare equal.
"""
import re
from typing import List

_TOKEN_RE = re.compile(r"[0-9a-z]+")

# Indonesian function words plus school vocabulary that carries no signal
# about which violation occurred.
STOP_WORDS = frozenset({
    # function words
    "dan", "atau", "di", "ke", "dari", "yang", "untuk", "dengan", "tanpa", "pada",
    "saat", "ketika", "oleh", "dalam", "luar", "ini", "itu", "tidak", "tak", "belum",
    "sudah", "telah", "akan", "sedang", "ada", "juga", "lagi", "karena", "sebelum",
    "sesudah", "setelah", "secara", "para", "si", "nya", "se", "per", "bagi", "hal",
    "kali", "sering", "selalu", "the", "a", "an", "of", "to", "in", "on", "at",
    # school vocabulary
    "sekolah", "masuk", "siswa", "siswi", "murid", "peserta", "didik", "kelas",
    "jam", "menit", "hari", "pelajaran", "lingkungan", "area", "waktu", "guru",
})


def normalize_text(text) -> str:
    """Lower-case and collapse whitespace; None becomes the empty string."""
    if not text:
        return ""
    return " ".join(str(text).lower().split())


def tokenize(text) -> List[str]:
    """Alphanumeric runs of the normalized text, in order."""
    return _TOKEN_RE.findall(normalize_text(text))


def significant_tokens(text) -> List[str]:
    """Distinct non-stop-word tokens, first occurrence order preserved."""
    seen = []
    for token in tokenize(text):
        if token in STOP_WORDS or token.isdigit() or token in seen:
            continue
        seen.append(token)
    return seen
