"""
Fusion Prompts
==============

Role-specialised prompt construction, synthesis/enhancement prompts, canned
user-facing texts and per-role generation parameters.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence

from qora_fusion.core.fusion_types import (
    ChatMessage,
    GenerationParams,
    ModelDescriptor,
    ModelResponse,
    ModelRole,
)


# =============================================================================
# ROLE INSTRUCTIONS
# =============================================================================

ROLE_INSTRUCTIONS: Dict[ModelRole, str] = {
    ModelRole.PRIMARY: (
        "You are the Primary Analysis AI. Provide comprehensive, well-reasoned "
        "responses with logical structure."
    ),
    ModelRole.QUALITY: (
        "You are the Analytical AI. Focus on key facts, careful reasoning, "
        "validation and precise technical detail."
    ),
    ModelRole.CREATIVE: (
        "You are the Creative Perspectives AI. Offer innovative approaches, "
        "alternatives, and creative solutions."
    ),
    ModelRole.VISION: (
        "You are the Vision AI. Describe and analyse the attached images "
        "accurately before answering the question."
    ),
}


def build_role_prompt(query: str, role: ModelRole) -> str:
    """Wrap the user query in the role's instruction."""
    return (
        f"{ROLE_INSTRUCTIONS[role]}\n\n"
        f"User Query: {query}\n\n"
        "Provide your specialized perspective on this query. Focus on your role's "
        "strengths while maintaining accuracy and helpfulness."
    )


def build_messages(
    prompt: str,
    context: Sequence[ChatMessage] = (),
    image_urls: Sequence[str] = (),
) -> List[Dict[str, object]]:
    """
    Chat-completions message list: prior turns, then the prompt.

    Image URLs become OpenAI-style multimodal content parts on the final
    user message.
    """
    messages: List[Dict[str, object]] = [m.to_dict() for m in context]
    if image_urls:
        parts: List[Dict[str, object]] = [{"type": "text", "text": prompt}]
        parts.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
        messages.append({"role": "user", "content": parts})
    else:
        messages.append({"role": "user", "content": prompt})
    return messages


# =============================================================================
# FUSION PROMPTS
# =============================================================================


def build_synthesis_prompt(query: str, responses: Sequence[ModelResponse], max_chars: int = 800) -> str:
    """Merge prompt over responses already ranked best-first."""
    blocks = "\n\n".join(
        f"**{i + 1}:** {r.text[:max_chars]}" for i, r in enumerate(responses)
    )
    return (
        "Quickly combine these AI responses into one better answer:\n\n"
        f'Query: "{query}"\n\n'
        f"{blocks}\n\n"
        "Provide a concise, accurate synthesis:"
    )


def build_consensus_prompt(query: str, responses: Sequence[ModelResponse], max_chars: int = 800) -> str:
    """Cross-validation prompt: keep what the answers agree on."""
    blocks = "\n\n".join(
        f"**Response {i + 1}:**\n{r.text[:max_chars]}" for i, r in enumerate(responses)
    )
    return (
        "Cross-check these independent answers to the same question and build a "
        "consensus answer.\n\n"
        f'**Query:** "{query}"\n\n'
        f"{blocks}\n\n"
        "Keep the points the answers agree on, resolve contradictions in favour of "
        "the best-supported claim, and drop anything only one answer asserts without "
        "support.\n\n**Consensus Answer:**"
    )


def build_enhancement_prompt(query: str, primary_text: str) -> str:
    return (
        f'Please enhance and expand upon this response to the question "{query}":\n\n'
        f"{primary_text}\n\n"
        "Provide additional depth, technical details, examples, or alternative "
        "perspectives that would make this response more comprehensive and valuable. "
        "Reply with the complete improved answer."
    )


# =============================================================================
# CANNED TEXTS
# =============================================================================


def vision_unavailable_message(image_count: int) -> str:
    """Reply used when images were attached but no vision model can run."""
    noun = "image" if image_count == 1 else "images"
    return (
        f"I can see you've shared {image_count} {noun}, but image analysis is "
        "temporarily unavailable. I'd still be happy to help! Please describe what "
        f"you see in the {noun}, or tell me what specific information you're looking "
        "for, and I'll assist based on your description."
    )


APOLOGY_MESSAGES: List[str] = [
    "I'm experiencing a temporary processing disruption, but I'm here to help! "
    "Could you try rephrasing your request or breaking it into smaller parts?",
    "All of my models are busy right now. Please retry your request in a few moments.",
    "I couldn't reach any of my reasoning models just now. In the meantime, a shorter "
    "or more specific question may get through faster.",
    "I apologize, but I'm unable to process your request at this time. Service "
    "should be restored shortly, so please try again.",
]

VISION_APOLOGY_HINT = (
    " If your question is about an image, please describe its content and I'll "
    "help as soon as image analysis is restored."
)


# =============================================================================
# GENERATION PARAMETERS
# =============================================================================


def length_multiplier(query: str) -> float:
    length = len(query)
    if length > 300:
        return 1.1
    if length > 150:
        return 1.05
    return 0.95


def generation_params(
    model: ModelDescriptor,
    query: str,
    role_token_caps: Optional[Mapping[str, int]] = None,
) -> GenerationParams:
    """Sampling parameters for ``model`` answering ``query``."""
    max_tokens = model.max_tokens
    if role_token_caps and model.role.value in role_token_caps:
        max_tokens = min(max_tokens, int(role_token_caps[model.role.value]))
    return GenerationParams(
        temperature=model.temperature,
        max_tokens=max(1, int(max_tokens * length_multiplier(query))),
    )


__all__ = [
    "ROLE_INSTRUCTIONS",
    "APOLOGY_MESSAGES",
    "VISION_APOLOGY_HINT",
    "build_role_prompt",
    "build_messages",
    "build_synthesis_prompt",
    "build_consensus_prompt",
    "build_enhancement_prompt",
    "vision_unavailable_message",
    "length_multiplier",
    "generation_params",
]
