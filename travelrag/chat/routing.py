import re

# Short or simple messages are answered by the faster model; detailed travel
# planning goes to the default one.
SIMPLE_QUERY_PATTERNS = [
    re.compile(r"^(hi|hello|hey|good morning|good afternoon)", re.IGNORECASE),
    re.compile(r"^(yes|no|ok|sure|thanks|thank you)", re.IGNORECASE),
    re.compile(r"^\w{1,20}$"),
    re.compile(r"^(what|how much|when|where) ", re.IGNORECASE),
    re.compile(r"quick", re.IGNORECASE),
    re.compile(r"simple", re.IGNORECASE),
    re.compile(r"fast", re.IGNORECASE),
]


def should_use_fast_model(query: str) -> bool:
    query = query.strip()
    return any(pattern.search(query) for pattern in SIMPLE_QUERY_PATTERNS)
