"""
Reasoning provider: the single adapter between the engines and the completion model.

Every prompt and every structured-output parse lives here, so the engines only
see typed results. Malformed model output is logged and treated as "no result";
provider failures propagate as ProviderError.
"""

from dataclasses import dataclass
from typing import Any, List, Sequence

from ..models.core import Path, TimelineEvent
from ..utils.bedrock_llm import BedrockLLM
from ..utils.errors import ParseError
from ..utils.json_utils import extract_json
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

_SEVERITIES = ('high', 'medium', 'low')
_IMPLICATION_TYPES = ('action_suggestion', 'connection', 'gap')

CONTRADICTION_SYSTEM_PROMPT = """
You compare a NEW memory against EXISTING memories belonging to the same person.

A contradiction means the two make conflicting claims about the same subject.

Examples of contradictions:
- "I prefer coffee" vs "I prefer tea" (same preference)
- "Sarah is an intern" vs "Sarah is a senior engineer" (same person's role, possibly a temporal progression)
- "Meeting is on Monday" vs "Meeting is on Tuesday" (same event)

Examples of NOT contradictions:
- "I had coffee today" vs "I prefer tea" (specific instance vs general preference)
- Facts about different subjects
- Complementary information

Return a JSON object with this exact format:
```json
{
  "contradictions": [
    {
      "existingMemoryIndex": 0,
      "reason": "brief explanation",
      "severity": "high|medium|low",
      "isTemporalProgression": false
    }
  ]
}
```

If there are no contradictions, return {"contradictions": []}."""

TIMELINE_PROMPT = """Given the following chronological events about "{entity}", write a coherent narrative that tells the story of this entity over time.

TIMELINE:
{events}

The narrative should:
- Identify key developments and changes over time
- Note relationships and connections that formed
- Highlight the current state
- Use past tense for historical events and present tense for the current state

Keep it concise (3-5 sentences).

Narrative:"""

PATHS_PROMPT = """Based on these relationship paths from the user's knowledge graph, provide insight for their query.

QUERY: "{query}"

RELATIONSHIP PATHS:
{paths}

Give a brief (2-3 sentences) answer that uses these relationships to address the query.

Answer:"""

IMPLICATIONS_PROMPT = """Given the following memories about a user and their current query, identify logical implications, connections, or action suggestions.

USER'S MEMORIES:
{memories}

CURRENT QUERY: "{query}"

Identify:
1. ACTION SUGGESTIONS: the memories imply an action the user might need to take
2. CONNECTIONS: memories are related in ways that provide useful insight
3. GAPS: memories reference something important but lack crucial details

Respond in JSON format:
```json
{{
  "implications": [
    {{
      "type": "action_suggestion|connection|gap",
      "content": "the implication or suggestion",
      "relatedMemoryIndices": [0, 1],
      "confidence": 0.8
    }}
  ]
}}
```

Only include high-confidence implications that are genuinely useful."""


@dataclass
class ContradictionFinding:
    """One validated entry of the model's contradiction verdict."""
    index: int
    reason: str
    severity: str
    is_temporal_progression: bool


@dataclass
class ImplicationFinding:
    """One validated entry of the model's implication list."""
    type: str
    content: str
    indices: List[int]
    confidence: float


def _as_index(value: Any, size: int) -> int:
    if isinstance(value, bool):
        return -1
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0 or value >= size:
        return -1
    return value


def parse_contradictions(response: str, candidate_count: int) -> List[ContradictionFinding]:
    """
    Parse the model's contradiction verdict.

    Entries with a missing or out-of-range index are dropped individually;
    a response that cannot be parsed at all yields an empty list.
    """
    try:
        payload = extract_json(response)
    except ParseError as e:
        logger.warning(f'Unparseable contradiction response: {e}')
        return []

    if isinstance(payload, dict):
        entries = payload.get('contradictions') or []
    elif isinstance(payload, list):
        entries = payload
    else:
        entries = []
    if not isinstance(entries, list):
        logger.warning(f'Expected list of contradictions, got {type(entries).__name__}')
        return []

    findings = []
    seen = set()
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        index = _as_index(entry.get('existingMemoryIndex'), candidate_count)
        if index < 0:
            logger.debug(f'Discarding contradiction entry with invalid index: {entry.get("existingMemoryIndex")}')
            continue
        if index in seen:
            continue
        seen.add(index)

        severity = str(entry.get('severity') or 'medium').strip().lower()
        findings.append(
            ContradictionFinding(index=index,
                                 reason=str(entry.get('reason') or '').strip(),
                                 severity=severity if severity in _SEVERITIES else 'medium',
                                 is_temporal_progression=entry.get('isTemporalProgression') is True))
    return findings


def parse_implications(response: str, memory_count: int, min_confidence: float) -> List[ImplicationFinding]:
    """
    Parse the model's implication list.

    Out-of-range memory indices are dropped; an entry left with no valid
    index, an unknown type or confidence at or below `min_confidence` is
    discarded.
    """
    try:
        payload = extract_json(response)
    except ParseError as e:
        logger.warning(f'Unparseable implication response: {e}')
        return []

    entries = payload.get('implications') if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        logger.warning(f'Expected list of implications, got {type(entries).__name__}')
        return []

    findings = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        kind = str(entry.get('type') or '').strip().lower()
        content = str(entry.get('content') or '').strip()
        try:
            confidence = float(entry.get('confidence', 0))
        except (TypeError, ValueError):
            continue
        raw_indices = entry.get('relatedMemoryIndices')
        if not isinstance(raw_indices, list):
            raw_indices = []
        indices = []
        for raw in raw_indices:
            index = _as_index(raw, memory_count)
            if index >= 0 and index not in indices:
                indices.append(index)
        if kind not in _IMPLICATION_TYPES or not content or not indices or confidence <= min_confidence:
            logger.debug(f'Discarding implication entry: {entry}')
            continue
        findings.append(ImplicationFinding(type=kind, content=content, indices=indices, confidence=min(confidence, 1.0)))
    return findings


class ReasoningProvider:
    """Prompts the completion model and turns its answers into typed results."""

    def __init__(self, llm: BedrockLLM):
        self.llm = llm

    def find_contradictions(self, new_content: str, candidates: Sequence[str]) -> List[ContradictionFinding]:
        """
        Ask the model which candidates conflict with the new content.

        Raises:
            ProviderError: If the completion call fails
        """
        if not candidates:
            return []
        existing = '\n'.join(f'[{i}] {content}' for i, content in enumerate(candidates))
        prompt = f'NEW MEMORY:\n{new_content}\n\nEXISTING MEMORIES:\n{existing}'
        response = self.llm.complete(prompt, system_prompt=CONTRADICTION_SYSTEM_PROMPT, prefill='```json')
        findings = parse_contradictions(response, len(candidates))
        logger.debug(f'Model reported {len(findings)} valid contradictions among {len(candidates)} candidates')
        return findings

    def timeline_narrative(self, entity_name: str, events: Sequence[TimelineEvent]) -> str:
        """
        Raises:
            ProviderError: If the completion call fails
        """
        lines = '\n'.join(f'[{event.date.date().isoformat()}] {event.event}' for event in events)
        prompt = TIMELINE_PROMPT.format(entity=entity_name, events=lines)
        return self.llm.complete(prompt, system_prompt='You write short factual narratives.').strip()

    def explain_paths(self, query: str, paths: Sequence[Path]) -> str:
        """
        Raises:
            ProviderError: If the completion call fails
        """
        if not paths:
            return ''
        prompt = PATHS_PROMPT.format(query=query, paths='\n'.join(path.explanation for path in paths))
        return self.llm.complete(prompt, system_prompt='You answer questions about a personal knowledge graph.').strip()

    def find_implications(self, memories: Sequence[str], query: str, min_confidence: float) -> List[ImplicationFinding]:
        """
        Ask the model what the memories imply for the query.

        Raises:
            ProviderError: If the completion call fails
        """
        if len(memories) < 2:
            return []
        lines = '\n'.join(f'[{i}] {content}' for i, content in enumerate(memories))
        prompt = IMPLICATIONS_PROMPT.format(memories=lines, query=query)
        response = self.llm.complete(prompt, system_prompt='You find useful implications in personal notes.',
                                     prefill='```json')
        findings = parse_implications(response, len(memories), min_confidence)
        logger.debug(f'Model reported {len(findings)} valid implications over {len(memories)} memories')
        return findings
