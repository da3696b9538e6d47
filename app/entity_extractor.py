"""
Regex + heuristic named-entity extraction for roleplay chat text.

Each entity type has a pattern and a minimum confidence. Candidates are
scored from capitalization, repeat mentions, nearby keyword clues and
multi-word names; only candidates at or above their type's threshold are
returned.
"""

import re
from typing import Dict, List, Any

# Capture group 1 names the entity when the pattern has one
ENTITY_PATTERNS = {
    "person": re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b"),
    "place": re.compile(r"\b(?:in|at|from|to|near|by|within)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b"),
    "organization": re.compile(
        r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s+"
        r"(?:Company|Corporation|Inc|LLC|Organization|Guild|Order|Council|Academy|Institute|Temple|Church))\b"
    ),
    "item": re.compile(
        r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s+"
        r"(?:Sword|Shield|Ring|Amulet|Staff|Blade|Armor|Weapon|Tool|Artifact|Relic|Book|Scroll|Potion|Elixir))\b"
    ),
    "title": re.compile(
        r"\b((?:Lord|Lady|Sir|Dame|King|Queen|Prince|Princess|Duke|Duchess|Count|Countess|"
        r"Baron|Baroness|Captain|General|Admiral|Doctor|Professor)\s+[A-Z][a-z]+)\b"
    ),
    "fantasy_apostrophe": re.compile(r"\b[A-Z][a-z]*['’‘-][A-Z]?[a-z]+(?:['’‘-][a-z]+)*\b"),
    "hyphenated": re.compile(r"\b[A-Z][a-z]*-[A-Z]?[a-z]+(?:-[A-Z]?[a-z]+)*\b"),
    "quoted_title": re.compile(r'"([A-Z][^"]{2,50})"'),
    "titled_person": re.compile(
        r"\b((?:Dr|Mr|Mrs|Ms|Miss|Prof|Professor|Sir|Captain|Colonel|General|Admiral)\.\s*"
        r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b"
    ),
}

CONFIDENCE_THRESHOLDS = {
    "person": 0.7,
    "place": 0.6,
    "organization": 0.8,
    "item": 0.5,
    "title": 0.9,
    "fantasy_apostrophe": 0.75,
    "hyphenated": 0.7,
    "quoted_title": 0.85,
    "titled_person": 0.85,
}

CONTEXT_PATTERNS = {
    "description": re.compile(r"(?:is|was|are|were)\s+(.+?)(?:\.|!|\?|$)", re.MULTILINE),
    "relationship": re.compile(
        r"(?:friend|enemy|ally|rival|partner|spouse|child|parent|sibling|mentor|student|master|servant)"
        r"\s+(?:of|to)\s+([^.!?]+)"
    ),
    "location": re.compile(
        r"(?:lives|works|stays|resides|dwells|rules|governs)\s+(?:in|at|on|over|within)\s+([^.!?]+)"
    ),
    "attribute": re.compile(
        r"(?:has|had|possesses|owns|wields|carries|knows|learned|mastered)\s+(.+?)(?:\.|!|\?|$)",
        re.MULTILINE
    ),
    "action": re.compile(
        r"(?:fought|defeated|saved|rescued|destroyed|created|built|founded|discovered)\s+(.+?)(?:\.|!|\?|$)",
        re.MULTILINE
    ),
    "emotion": re.compile(
        r"(?:loves|hates|fears|admires|despises|trusts|distrusts)\s+(.+?)(?:\.|!|\?|$)",
        re.MULTILINE
    ),
}

# (clue pattern, boost) per type, matched against a lowercase window around each mention
CONTEXT_CLUES = {
    "person": [
        (r"\b(he|she|they|him|her|them|his|hers|their)\b", 0.2),
        (r"\b(said|told|asked|spoke|replied|whispered|shouted|announced)\b", 0.2),
        (r"\b(mr|mrs|ms|dr|sir|lady|lord|master|mistress)\b", 0.3),
        (r"\b(born|died|lived|worked|studied|traveled)\b", 0.15),
    ],
    "place": [
        (r"\b(in|at|from|to|near|by|within|outside|inside|through)\b", 0.2),
        (r"\b(city|town|village|kingdom|country|realm|land|region|area)\b", 0.3),
        (r"\b(forest|mountain|castle|palace|temple|fortress|dungeon|tower)\b", 0.25),
        (r"\b(located|situated|found|built|established)\b", 0.15),
    ],
    "organization": [
        (r"\b(member|leader|joined|founded|part of|belongs to|works for|serves)\b", 0.2),
        (r"\b(guild|order|company|corporation|academy|institute|temple|church|council)\b", 0.3),
        (r"\b(organization|group|faction|alliance|union|society)\b", 0.25),
    ],
    "item": [
        (r"\b(wielded|carried|equipped|owned|found|lost|stolen|forged)\b", 0.2),
        (r"\b(weapon|tool|artifact|relic|treasure|magical|ancient|powerful)\b", 0.3),
        (r"\b(sword|ring|amulet|staff|blade|armor|shield)\b", 0.25),
    ],
    "title": [
        (r"\b(rules|governs|leads|commands|serves|appointed|crowned|elected)\b", 0.3),
        (r"\b(king|queen|lord|lady|duke|count|baron|emperor)\b", 0.25),
    ],
    "fantasy_apostrophe": [
        (r"\b(warrior|mage|knight|priest|ranger|rogue|druid|monk)\b", 0.25),
        (r"\b(elf|elven|orc|dwarf|dwarven|troll|goblin|dragon)\b", 0.3),
        (r"\b(clan|tribe|house|lineage|bloodline|family)\b", 0.2),
    ],
    "hyphenated": [
        (r"\b(mr|mrs|ms|dr|sir|lady|lord|master)\b", 0.3),
        (r"\b(he|she|they|him|her|said|told)\b", 0.2),
    ],
    "quoted_title": [
        (r"\b(book|novel|tome|grimoire|scroll|manuscript)\b", 0.3),
        (r"\b(ship|vessel|boat|craft|frigate|galleon)\b", 0.3),
        (r"\b(titled|called|named|known as)\b", 0.2),
        (r"\b(written|authored|penned|composed)\b", 0.25),
    ],
    "titled_person": [
        (r"\b(doctor|professor|captain|general|admiral)\b", 0.35),
        (r"\b(teaches|studied|practiced|researched|commanded)\b", 0.2),
        (r"\b(university|hospital|military|academy)\b", 0.25),
    ],
}
_COMPILED_CLUES = {
    entity_type: [(re.compile(pattern), boost) for pattern, boost in clues]
    for entity_type, clues in CONTEXT_CLUES.items()
}

COMMON_WORDS = {
    'The', 'This', 'That', 'They', 'Them', 'Their', 'There', 'Then', 'Than',
    'When', 'Where', 'What', 'Who', 'Why', 'How', 'Yes', 'No', 'Not',
    'And', 'But', 'Or', 'So', 'If', 'As', 'At', 'By', 'For', 'In',
    'Of', 'On', 'To', 'Up', 'It', 'Is', 'Be', 'Do', 'Go', 'See',
    'All', 'Any', 'Can', 'Had', 'Her', 'Was', 'One', 'Our', 'Out',
    'Day', 'Get', 'Has', 'Him', 'His', 'Man', 'New', 'Now',
    'Old', 'Two', 'Way', 'Boy', 'Did', 'Its', 'Let',
    'Put', 'Say', 'She', 'Too', 'Use'
}

CLUE_WINDOW = 50
MAX_CLUE_SCORE = 0.4


def is_common_word(word: str) -> bool:
    """Check if word is too common (or too short) to be a significant entity."""
    return word in COMMON_WORDS or len(word) < 3


def _mention_pattern(name: str) -> re.Pattern:
    return re.compile(re.escape(name), re.IGNORECASE)


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, value))


def analyze_context_clues(name: str, entity_type: str, text: str) -> float:
    """
    Sum keyword boosts found near every mention of the name.

    The window is 50 characters on each side of a mention, lowercased. The
    total is capped at 0.4.
    """
    clues = _COMPILED_CLUES.get(entity_type)
    if not clues:
        return 0.0

    score = 0.0
    for match in _mention_pattern(name).finditer(text):
        start = max(0, match.start() - CLUE_WINDOW)
        end = min(len(text), match.start() + len(name) + CLUE_WINDOW)
        window = text[start:end].lower()
        for pattern, boost in clues:
            if pattern.search(window):
                score += boost

    return min(MAX_CLUE_SCORE, score)


def calculate_confidence(name: str, entity_type: str, text: str) -> float:
    """Score a candidate entity. Always within [0, 1]."""
    confidence = 0.5

    if re.match(r"^[A-Z][a-z]+", name):
        confidence += 0.2

    mentions = len(_mention_pattern(name).findall(text))
    if mentions > 1:
        confidence += min(0.3, mentions * 0.1)

    confidence += analyze_context_clues(name, entity_type, text)

    if ' ' in name:
        confidence += 0.1

    return clamp_confidence(confidence)


def extract_context(name: str, text: str) -> List[Dict[str, Any]]:
    """Collect descriptive/relational sentences that mention the entity."""
    contexts = []
    lowered_name = name.lower()

    for context_type, pattern in CONTEXT_PATTERNS.items():
        for match in pattern.finditer(text):
            context_text = match.group(0).strip()
            if context_text and lowered_name in context_text.lower():
                contexts.append({
                    "type": context_type,
                    "text": context_text,
                    "confidence": 0.8
                })

    return contexts


def extract_entities(text: str) -> List[Dict[str, Any]]:
    """
    Extract entities from text using pattern matching.

    The same name can be reported under more than one type (e.g. a person
    name also matched as a place after "in"); callers key by lowercase name.

    Returns:
        List of {name, type, confidence, context, position, source_text}
    """
    if not text:
        return []

    entities = []

    for entity_type, pattern in ENTITY_PATTERNS.items():
        threshold = CONFIDENCE_THRESHOLDS[entity_type]

        for match in pattern.finditer(text):
            raw_name = match.group(1) if pattern.groups else match.group(0)
            if not raw_name:
                continue

            name = raw_name.strip()
            if len(name) <= 2 or is_common_word(name):
                continue

            confidence = calculate_confidence(name, entity_type, text)
            if confidence < threshold:
                continue

            position = match.start(1) if pattern.groups else match.start()
            entities.append({
                "name": name,
                "type": entity_type,
                "confidence": confidence,
                "context": extract_context(name, text),
                "position": position,
                "source_text": text[max(0, position - CLUE_WINDOW):min(len(text), position + len(name) + CLUE_WINDOW)]
            })

    return entities
