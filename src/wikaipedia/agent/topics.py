from typing import Any, Dict, List, Tuple

from ..platform_client import normalize_str


GENERAL_TOPIC = "general"

TOPIC_CATEGORIES: List[Tuple[str, List[str]]] = [
    ("crypto", ["crypto", "defi", "wallet", "ethereum", "bitcoin", "token", "web3"]),
    ("sports", ["sport", "football", "soccer", "nba", "nfl", "cricket", "fitness"]),
    ("gaming", ["game", "gaming", "esports", "rpg", "fps", "steam"]),
    ("books", ["book", "novel", "reading", "literature", "author"]),
    ("science", ["science", "physics", "chemistry", "biology", "space", "research"]),
    ("programming", ["code", "programming", "typescript", "javascript", "python", "rust", "api"]),
]


def infer_topics(question: Dict[str, Any]) -> List[str]:
    text = f"{normalize_str(question.get('header'))} {normalize_str(question.get('content'))}".lower()
    topics: List[str] = []
    for topic, tokens in TOPIC_CATEGORIES:
        if any(token in text for token in tokens):
            topics.append(topic)
    return topics or [GENERAL_TOPIC]


def normalize_topics(items: List[Any]) -> List[str]:
    out: List[str] = []
    seen = set()
    for item in items:
        value = normalize_str(item).strip().lower()
        if not value:
            continue
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out or [GENERAL_TOPIC]
