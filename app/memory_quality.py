"""
Summary quality scoring and frequency-based core memory detection.

Quality is a weighted count of stock "slop" phrases. Core memories are
summaries that either carry the model's <CORE_MEMORY> tag or repeat several
phrases that recur often across the chat (tracked as n-gram counts).
"""

import re
from typing import Dict, List, Optional, Any

from app.database import db_record_ngrams, db_get_ngram_frequencies

DEFAULT_BLACKLIST = {
    'a small smile': 2,
    'a faint blush': 2,
    "couldn't help but": 3,
    'a sense of': 2,
    'began to': 3,
    'started to': 3,
    'seemed to': 2,
    'appeared to': 2,
    'a wave of': 2,
    'a mix of': 2,
    'a hint of': 2,
    'a flicker of': 2,
    'a surge of': 2,
    'felt a': 2,
    'with a sigh': 2,
    'let out a': 2,
    'as if': 2,
    'as though': 2
}

HIGH_FREQUENCY_SCORE = 5.0
MIN_CORE_PHRASES = 2
CORE_CONFIDENCE_THRESHOLD = 0.6


def calculate_summary_quality(summary_text: str,
                              blacklist: Optional[Dict[str, float]] = None) -> Dict[str, Any]:
    """
    Rate a summary by its weighted slop-phrase count.

    Returns:
        {'quality', 'slop_score', 'needs_regeneration', 'detected_phrases'}
    """
    if not summary_text:
        return {"quality": "unknown", "slop_score": 0, "needs_regeneration": False, "detected_phrases": []}

    blacklist = blacklist or DEFAULT_BLACKLIST
    slop_score = 0
    detected = []

    for phrase, weight in blacklist.items():
        matches = len(re.findall(rf"\b{re.escape(phrase)}\b", summary_text, re.IGNORECASE))
        if matches > 0:
            slop_score += matches * weight
            detected.append({"phrase": phrase, "count": matches, "weight": weight})

    needs_regeneration = False
    if slop_score > 15:
        quality = "poor"
        needs_regeneration = True
    elif slop_score > 10:
        quality = "low"
        needs_regeneration = True
    elif slop_score > 5:
        quality = "medium"
    elif slop_score > 2:
        quality = "good"
    else:
        quality = "excellent"

    detected.sort(key=lambda d: d["count"] * d["weight"], reverse=True)

    return {
        "quality": quality,
        "slop_score": slop_score,
        "needs_regeneration": needs_regeneration,
        "detected_phrases": detected[:3]
    }


def extract_ngrams(text: str, min_n: int = 2, max_n: int = 5) -> List[str]:
    """Unique lowercase word n-grams, first occurrence order."""
    if not text:
        return []

    cleaned = re.sub(r"[^\w\s'-]", " ", text.lower())
    words = cleaned.split()

    seen = set()
    ngrams = []
    for n in range(min_n, max_n + 1):
        for i in range(len(words) - n + 1):
            ngram = " ".join(words[i:i + n])
            if ngram not in seen:
                seen.add(ngram)
                ngrams.append(ngram)
    return ngrams


class NgramFrequencyTracker:
    """Counts how often phrases recur across observed chat messages."""

    def __init__(self, min_n: int = 2, max_n: int = 5):
        self.min_n = min_n
        self.max_n = max_n

    def observe(self, text: str) -> int:
        """Record the n-grams of one message. Returns how many were recorded."""
        ngrams = extract_ngrams(text, self.min_n, self.max_n)
        if ngrams and not db_record_ngrams(ngrams):
            return 0
        return len(ngrams)

    def lookup(self, ngrams: List[str]) -> Dict[str, Dict[str, float]]:
        return db_get_ngram_frequencies(ngrams)


def detect_core_memory_from_frequency(text: str, tracker: Optional[NgramFrequencyTracker]) -> Dict[str, Any]:
    """
    Flag a summary as core when it repeats at least two high-frequency phrases.

    Confidence mixes phrase count (capped at five) and average score
    (capped at ten) 40/60.
    """
    if not text or tracker is None:
        return {"is_core": False, "phrases": [], "confidence": 0.0, "method": "frequency_analysis"}

    ngrams = extract_ngrams(text, tracker.min_n, tracker.max_n)
    frequencies = tracker.lookup(ngrams)

    phrases = []
    for ngram in ngrams:
        data = frequencies.get(ngram)
        if data and data["score"] > HIGH_FREQUENCY_SCORE:
            phrases.append({"phrase": ngram, "score": data["score"], "count": data.get("count", 1)})

    phrases.sort(key=lambda p: p["score"], reverse=True)

    confidence = 0.0
    if phrases:
        avg_score = sum(p["score"] for p in phrases) / len(phrases)
        confidence = min(len(phrases) / 5, 1) * 0.4 + min(avg_score / 10, 1) * 0.6

    is_core = len(phrases) >= MIN_CORE_PHRASES
    if is_core:
        top = ", ".join(f'"{p["phrase"]}" ({p["score"]:.1f})' for p in phrases[:3])
        print(f"[SUMMARY] Frequency analysis found core memory candidate ({confidence:.0%}): {top}")

    return {
        "is_core": is_core,
        "phrases": phrases[:5],
        "confidence": confidence,
        "method": "frequency_analysis"
    }
