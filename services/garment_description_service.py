"""Service for generating garment descriptions using OpenAI"""
import re
import logging
from typing import Optional

from services.prompt_service import DEFAULT_DESCRIPTION
from services.replicate_service import to_data_uri

logger = logging.getLogger(__name__)

DESCRIPTION_PROMPT = """Analyze this garment image and provide a concise, natural language description for virtual try-on generation.

Describe in 1-2 sentences: garment type, color, style, material/texture, and key features (collar, sleeves, pattern, fit).

IMPORTANT:
- Use plain text only (NO markdown, NO bullet points, NO formatting)
- Keep it under 40 words
- Write as a natural sentence, not a list

Example format: "A gray cable knit sweater with a turtleneck collar, loose fit, chunky knit texture, and ribbed cuffs." """


def clean_description(text: str) -> str:
    """Strip markdown the model sometimes adds anyway."""
    # Remove markdown bold/italic
    text = re.sub(r'\*\*([^*]+)\*\*', r'\1', text)
    text = re.sub(r'\*([^*]+)\*', r'\1', text)
    # Remove markdown headers
    text = re.sub(r'^#+\s*', '', text, flags=re.MULTILINE)
    # Remove bullet points and dashes at start of lines
    text = re.sub(r'^[\-\*]\s*', '', text, flags=re.MULTILINE)
    text = ' '.join(text.split())
    return text.strip('"')


async def generate_garment_description(client, garment_image: str) -> str:
    """Describe the garment with OpenAI vision, falling back to a filler description"""
    if client is None:
        return DEFAULT_DESCRIPTION

    try:
        response = await client.chat.completions.create(
            model="gpt-4o-mini",
            messages=[{
                "role": "user",
                "content": [
                    {"type": "text", "text": DESCRIPTION_PROMPT},
                    {"type": "image_url", "image_url": {"url": to_data_uri(garment_image)}},
                ],
            }],
            max_tokens=100,
        )
        description = clean_description(response.choices[0].message.content or "")
        if not description:
            return DEFAULT_DESCRIPTION

        logger.info(f"Generated garment description: {description}")
        return description

    except Exception as e:
        logger.error(f"Error generating garment description: {str(e)}")
        logger.warning(f"Using default description: {DEFAULT_DESCRIPTION}")
        return DEFAULT_DESCRIPTION


def resolve_description(description: Optional[str]) -> Optional[str]:
    cleaned = (description or "").strip()
    return cleaned or None
