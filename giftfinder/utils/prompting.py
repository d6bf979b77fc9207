# =============================================
# File: giftfinder/utils/prompting.py
# Purpose: Build JSON-structured gift recommendation prompts
# =============================================
from __future__ import annotations
from typing import Dict, List, Tuple

from .sanitize import sanitize_list, sanitize_user_field

SYS_PROMPT = (
    "You are an expert gift recommendation assistant with deep knowledge of products, "
    "trends, and gift-giving etiquette. Suggest thoughtful, personalized gifts that match "
    "the recipient's profile, respect the budget exactly, and span several categories. "
    "Prefer specific, purchasable products over generic ideas. "
    "Output MUST be a valid JSON object of the form {\"recommendations\": [...]} and nothing else."
)

RESPONSE_SCHEMA_EXAMPLE = """{
  "recommendations": [
    {
      "productName": "string",
      "description": "string (2-3 sentences)",
      "price": 0.00,
      "category": "string",
      "tags": ["string"],
      "matchReason": "string (why this fits the recipient)"
    }
  ]
}"""

USER_TEMPLATE = (
    "Find gift recommendations for this recipient:\n"
    "{profile}\n\n"
    "Instructions:\n"
    "- Suggest {count} unique gift ideas priced between ${budget_min:.2f} and ${budget_max:.2f}.\n"
    "- Cover different categories; no more than {max_per_category} ideas per category.\n"
    "- Tie every idea to the recipient's interests where possible.\n"
    "{avoid}"
    "- Return ONLY JSON in exactly this shape:\n"
    "{schema}"
)


def _profile_lines(
    occasion: str,
    relationship: str,
    age_range: str,
    gender: str | None,
    budget_min: float,
    budget_max: float,
    interests: List[str],
    recipient_name: str | None,
) -> str:
    lines = [
        f"- Occasion: {sanitize_user_field(occasion)}",
        f"- Relationship: {sanitize_user_field(relationship)}",
        f"- Age range: {sanitize_user_field(age_range, max_chars=50)}",
    ]
    if gender:
        lines.append(f"- Gender: {sanitize_user_field(gender, max_chars=50)}")
    if recipient_name:
        lines.append(f"- Recipient name: {sanitize_user_field(recipient_name, max_chars=100)}")
    lines.append(f"- Budget: ${budget_min:.2f} - ${budget_max:.2f}")
    cleaned = sanitize_list(interests)
    lines.append(f"- Interests: {', '.join(cleaned) if cleaned else 'not specified'}")
    return "\n".join(lines)


def build_gift_prompts(
    occasion: str,
    relationship: str,
    age_range: str,
    budget_min: float,
    budget_max: float,
    interests: List[str],
    gender: str | None = None,
    recipient_name: str | None = None,
    exclude_products: List[str] | None = None,
    count: int = 10,
    max_per_category: int = 3,
) -> Tuple[str, str]:
    """Returns (system_prompt, user_prompt)."""
    avoid = ""
    previous = sanitize_list(exclude_products or [], max_items=30, max_chars=100)
    if previous:
        avoid = f"- Do NOT suggest any of these previously recommended products: {', '.join(previous)}.\n"
    user = USER_TEMPLATE.format(
        profile=_profile_lines(occasion, relationship, age_range, gender, budget_min, budget_max, interests, recipient_name),
        count=count,
        budget_min=budget_min,
        budget_max=budget_max,
        max_per_category=max_per_category,
        avoid=avoid,
        schema=RESPONSE_SCHEMA_EXAMPLE,
    )
    return SYS_PROMPT, user


def to_messages(system_prompt: str, user_prompt: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
