"""Query-or-respond step of the RAG pipeline.

Greetings get a short conversational reply; everything else is answered
from the user's retrieved document chunks.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import structlog

from docchat import config
from docchat.llm_client import OllamaClient, ollama_client
from docchat.rag.retriever import Retriever, RetrievalResult, format_context, get_retriever

logger = structlog.get_logger()

RAG_SYSTEM_PROMPT = (
    "You are an assistant for question-answering tasks. "
    "Use the following pieces of retrieved context to answer "
    "the question. If you don't know the answer, say that you "
    "cannot find the answer in the uploaded documents. Use three "
    "sentences maximum and keep the answer concise."
    "\n\n"
    "{context}"
)

GREETING_SYSTEM_PROMPT = (
    "You are a friendly assistant for a document question-answering app. "
    "Reply to the user's greeting in one or two sentences and invite them "
    "to upload a PDF or load a web page and ask questions about it."
)

GREETING_PHRASES = {
    "hi", "hey", "hello", "hola", "howdy", "greetings", "yo", "sup",
    "hi there", "hey there", "hello there",
    "good morning", "good afternoon", "good evening",
    "how are you", "how are ya", "what's up", "whats up", "wassup",
    "thanks", "thank you", "thx", "ty", "ok", "okay", "cool", "great", "nice",
}

GREETING_PATTERNS = [
    re.compile(r"^(hey|hi|hello|hola|howdy|greetings)\b"),
    re.compile(r"^good (morning|afternoon|evening|day)\b"),
    re.compile(r"^(how are you|how'?s it going|how are things)\b"),
    re.compile(r"^(thanks|thank you)\b"),
]

QUESTION_WORDS = {"what", "who", "when", "where", "why", "how", "which", "explain", "describe", "summarize"}


def is_greeting(message: str) -> bool:
    """True for short greetings, thanks and acknowledgements.

    A leading greeting only counts when the message stays short and asks
    nothing, so "hi, what does chapter 2 say?" still goes to retrieval.
    """
    text = re.sub(r"[!?.,\s]+$", "", message.lower().strip())
    if not text:
        return False

    if text in GREETING_PHRASES:
        return True

    if len(re.findall(r"[a-z0-9']+", text)) > 5:
        return False

    for pattern in GREETING_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        rest = text[match.end():].strip(" ,!.?")
        if not rest or rest in GREETING_PHRASES:
            return True
        return not any(word in QUESTION_WORDS for word in re.findall(r"[a-z']+", rest))

    return False


@dataclass
class AssistantReply:
    response: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    used_context: bool = False


def summarize_sources(results: List[RetrievalResult]) -> List[Dict[str, Any]]:
    return [
        {
            "source": result.display_source,
            "content_preview": result.content[:200] + "..."
            if len(result.content) > 200
            else result.content,
            "relevance": round(result.relevance_score, 3),
        }
        for result in results
    ]


class RAGAssistant:
    """Builds the prompt for a question and makes the single LLM call."""

    def __init__(
        self,
        retriever: Optional[Retriever] = None,
        llm: Optional[OllamaClient] = None,
    ):
        self.retriever = retriever
        self.llm = llm or ollama_client

    def build_messages(
        self,
        question: str,
        context: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> List[Dict[str, str]]:
        """System prompt with context, then prior turns, then the question."""
        system_content = RAG_SYSTEM_PROMPT.format(context=context)
        turns = [
            {"role": turn["role"], "content": turn["content"]}
            for turn in (history or [])
            if turn.get("role") in ("user", "assistant") and turn.get("content")
        ]
        return [{"role": "system", "content": system_content}] + turns + [
            {"role": "user", "content": question}
        ]

    async def answer(
        self,
        question: str,
        user_id: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> AssistantReply:
        """Answer a question for a user.

        Raises:
            httpx.HTTPError, RuntimeError: If the LLM call fails
        """
        if is_greeting(question):
            logger.info("greeting_detected", user_id=user_id)
            response = await self.llm.chat_text([
                {"role": "system", "content": GREETING_SYSTEM_PROMPT},
                {"role": "user", "content": question},
            ])
            return AssistantReply(response=response)

        retriever = self.retriever or get_retriever()
        results: List[RetrievalResult] = []
        try:
            results = await retriever.retrieve(question, user_id=user_id)
        except RuntimeError as e:
            # Answer without context rather than failing the whole query
            logger.error("rag_retrieval_failed", error=str(e), user_id=user_id)

        context = format_context(results, max_chars=config.MAX_CONTEXT_CHARS)
        messages = self.build_messages(question, context, history)
        response = await self.llm.chat_text(messages)

        logger.info(
            "query_answered",
            user_id=user_id,
            sources=len(results),
            context_length=len(context),
            response_length=len(response),
        )

        return AssistantReply(
            response=response,
            sources=summarize_sources(results),
            used_context=bool(context),
        )
