"""Low-temperature Gemini call that picks goal titles out of prioritization reasoning."""

from __future__ import annotations

from coach.ai.gemini_client import GeminiClient
from coach.services.goal_resolver import TitleExtractor

EXTRACTION_PROMPT = """
Below is a coach's reasoning about which goals a user should focus on, followed by the user's goal titles.
Return exactly {count} goal titles that the reasoning recommends, most important first.
Copy each title verbatim from the list, one per line, with no numbering, bullets, or commentary.

Reasoning:
{reasoning}

Goal titles:
{titles}
""".strip()


def parse_title_lines(text: str) -> list[str]:
    return [line.strip() for line in (text or "").splitlines() if line.strip()]


def build_title_extractor(client: GeminiClient, *, temperature: float = 0.0) -> TitleExtractor:
    async def extract(reasoning: str, titles: list[str], count: int) -> list[str]:
        if not titles or count <= 0:
            return []
        prompt = EXTRACTION_PROMPT.format(
            count=count,
            reasoning=reasoning.strip(),
            titles="\n".join(f"- {title}" for title in titles),
        )
        text = await client.generate_text(prompt, temperature=temperature, max_output_tokens=200)
        return parse_title_lines(text)

    return extract
