"""Prompt templates for grounded answers."""
from typing import List


def system_prompt() -> str:
    """System prompt for answers grounded in retrieved passages."""
    return """You are a research assistant with access to a specific library of books.
Answer ONLY from the context provided.
If the context does not contain enough information to answer, say so clearly.
Always cite your sources using the format [Book Title, Page X].
Do not speculate beyond the passages provided.
Answer in the language of the question."""


def user_prompt(context_text: str, query: str) -> str:
    """Wrap the assembled context and the question.

    Args:
        context_text: Rendered passages from the context assembler
        query: User question

    Returns:
        Formatted prompt string
    """
    return f"""CONTEXT:
---
{context_text}
---

QUESTION:
{query}"""


def fallback_system_prompt(book_titles: List[str]) -> str:
    """System prompt used when retrieval found nothing relevant enough.

    Args:
        book_titles: Titles of the active books in the library

    Returns:
        Formatted prompt string
    """
    if book_titles:
        library = "\n".join(f"- {title}" for title in book_titles)
    else:
        library = "- (no books indexed yet)"

    return f"""You are a research assistant for a library containing these books:
{library}

No passage in the library was relevant enough to the user's question.
Tell the user plainly that the indexed books do not seem to cover it.
Suggest how they could rephrase the question, or which of the books above might be closest.
Do not invent quotations, page numbers or content from the books.
Answer in the language of the question."""


def fallback_user_prompt(query: str) -> str:
    return f"QUESTION:\n{query}"


def followup_system_prompt(count: int) -> str:
    """System prompt asking for follow-up questions to a grounded answer."""
    return f"""You help a reader continue researching a library of books.
Given a question and the answer it received, write {count} follow-up questions that explore the topic further.
Each question must be a complete sentence ending with a question mark.
Write them in the language of the original question.
Return one question per line, with no numbering and no other text."""


def followup_user_prompt(query: str, answer: str) -> str:
    return f"""QUESTION:
{query}

ANSWER:
{answer}"""
