"""
Rule-based query analysis: what a question needs (graph, timeline) and which
graph-reasoning strategy answers it.
"""

import re
from dataclasses import dataclass, field
from typing import List

WHO_CAN_HELP = 'who_can_help'
RELATIONSHIP_BETWEEN = 'relationship_between'
WHO_KNOWS = 'who_knows'
GENERAL = 'general'

_TIMELINE_PATTERNS = [
    r'timeline of', r'history of', r'evolution of', r'what happened (with|to|in)', r'chronology',
    r'events (related|about|of)'
]
_RELATIONSHIP_PATTERNS = [
    r'relationship between', r'how is .* (related|connected) to', r'who (knows|works with|collaborates|is involved)',
    r'network of', r'connections?'
]
_ANALYSIS_PATTERNS = [
    r'should i', r'analy[sz]e', r'implications?', r'impact of', r'compare', r'difference between', r'pros and cons',
    r'correlation', r'what if'
]
_FACTUAL_PATTERNS = [
    r'what is', r'who is', r'when (was|is)', r'where is', r'how many', r'define', r'explain', r'tell me about',
    r'facts? about'
]

_INTENT_PATTERNS = [
    (WHO_CAN_HELP, [r'who (can|could|should|might) help', r'who is (good|skilled|experienced) (at|with|in)',
                    r'who has experience']),
    (RELATIONSHIP_BETWEEN, [r'relationship between', r'how is .* (related|connected) to', r'connection between']),
    (WHO_KNOWS, [r'who knows', r'who is connected to', r'who works with']),
]

_STOP_WORDS = {
    'I', 'The', 'A', 'An', 'This', 'That', 'My', 'Your', 'What', 'We', 'They', 'He', 'She', 'It', 'Could', 'Should',
    'Would', 'Can', 'May', 'Will', 'Do', 'Does', 'Did', 'Of', 'In', 'To', 'On', 'At', 'For', 'Who', 'How', 'When',
    'Where', 'Why', 'Tell', 'Show'
}


def _matches(patterns: List[str], text: str) -> bool:
    return any(re.search(pattern, text, re.IGNORECASE) for pattern in patterns)


@dataclass
class QueryAnalysis:
    type: str
    intent: str
    needs_graph: bool
    needs_timeline: bool
    is_factual: bool
    is_complex: bool
    confidence: float
    entities: List[str] = field(default_factory=list)


def extract_entity_candidates(query: str) -> List[str]:
    """Quoted phrases, hashtags and capitalised phrases, deduplicated in order of appearance."""
    candidates = []
    for match in re.finditer(r'"([^"]+)"|\'([^\']+)\'', query):
        candidates.append(match.group(1) or match.group(2))
    candidates.extend(tag[1:] for tag in re.findall(r'#\w+', query))
    candidates.extend(re.findall(r'\b[A-Z][a-z]+(?:\s[A-Z][a-z]+)*\b', query))

    unique = []
    for candidate in candidates:
        candidate = candidate.strip()
        if candidate and candidate not in _STOP_WORDS and candidate not in unique:
            unique.append(candidate)
    return unique


def classify_intent(query: str) -> str:
    for intent, patterns in _INTENT_PATTERNS:
        if _matches(patterns, query):
            return intent
    return GENERAL


def analyze_query(query: str) -> QueryAnalysis:
    q = (query or '').strip()
    needs_timeline = _matches(_TIMELINE_PATTERNS, q)
    needs_graph = _matches(_RELATIONSHIP_PATTERNS, q)
    intent = classify_intent(q)
    if intent != GENERAL:
        needs_graph = True
    is_analysis = _matches(_ANALYSIS_PATTERNS, q)
    is_factual = _matches(_FACTUAL_PATTERNS, q) and not is_analysis

    if needs_timeline:
        query_type = 'timeline'
    elif needs_graph:
        query_type = 'relationship'
    elif is_analysis:
        query_type = 'analysis'
    else:
        query_type = 'simple'

    complexity = (0.3 if needs_timeline else 0) + (0.3 if needs_graph else 0) + (0.3 if is_analysis else 0)
    confidence = min(1.0, complexity + (0.2 if is_factual else 0.1))

    return QueryAnalysis(type=query_type,
                         intent=intent,
                         needs_graph=needs_graph,
                         needs_timeline=needs_timeline,
                         is_factual=is_factual,
                         is_complex=complexity > 0.3,
                         confidence=round(confidence, 2),
                         entities=extract_entity_candidates(q))
