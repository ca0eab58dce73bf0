"""Token counting compatible with the embedding and completion models.

The encoding is fixed; changing it silently breaks the chunk size guarantees.
"""
from functools import lru_cache

import tiktoken

import config


@lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding(config.TOKENIZER_ENCODING)


def count_tokens(text: str) -> int:
    """Count tokens in text.

    Args:
        text: Input text

    Returns:
        Token count
    """
    if not text:
        return 0
    return len(_encoding().encode(text, disallowed_special=()))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Return the longest token-boundary prefix of text with at most max_tokens tokens.

    Args:
        text: Input text
        max_tokens: Token ceiling

    Returns:
        The text itself if it already fits, otherwise the decoded prefix
    """
    if max_tokens <= 0:
        return ""
    tokens = _encoding().encode(text, disallowed_special=())
    if len(tokens) <= max_tokens:
        return text
    return _encoding().decode(tokens[:max_tokens])
