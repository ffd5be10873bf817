from typing import Any, Iterable

DEFAULT_SYSTEM_MESSAGE = (
    "You are a helpful AI assistant with access to various tools including web search and image generation."
)

_BASE_PROMPT = """You are Aether AI, an advanced AI assistant designed to help users with a wide range of tasks. You are helpful, harmless, and honest.

Key capabilities:
- Answer questions accurately and comprehensively
- Help with coding, writing, analysis, and problem-solving
- Use available tools when appropriate to enhance your responses
- Provide clear, well-structured, and actionable information

User context:{preferences}{tools}

Guidelines:
- Be concise but thorough in your responses
- Use markdown formatting for better readability
- If you're unsure about something, say so rather than guessing
- Always prioritize user safety and helpfulness
{mode_guidelines}
Remember: You are here to assist and empower the user. Be their intelligent companion for whatever they need help with."""

_DEFAULT_GUIDELINES = """- When using tools, explain what you're doing and why
"""

_SEARCH_GUIDELINES = """- Web search is enabled. Search before answering questions about recent events, prices, releases or anything that may have changed
- Base your answer on the search results and cite sources inline as markdown links
- If the results disagree or are thin, say so
"""

_RESEARCH_GUIDELINES = """- Deep research is enabled. For questions that need a thorough answer, call the research tool once with a precise research prompt
- Wait for the research summary, then write a structured report with headings and cite the sources it found
- Do not invent sources that the research did not return
"""

TITLE_PROMPT = (
    "Based on the following user message, generate a short, concise title for the chat "
    "(4-5 words max). No Markdown, no quotes.\n\nUser: \"{message}\"\n\nTitle:"
)

RESEARCH_PROMPT = """You are a research assistant tasked with thoroughly researching the following topic:

{prompt}

Please conduct comprehensive research by:
1. Searching for relevant information using multiple search queries
2. Reading important sources and documents
3. Gathering diverse perspectives and data points
4. Synthesizing the information into a comprehensive summary

Use the available tools to search and read sources. Provide your thoughts on each action you take.

Begin your research now."""

REPAIR_PROMPT = """The model tried to call the tool "{tool_name}" with the following arguments:
{arguments}

The tool accepts the following JSON schema:
{schema}

The arguments failed validation with this error:
{error}

Please fix the arguments. Reply with a single JSON object only."""


def _preferences_text(preferences: dict[str, Any] | None) -> str:
    if not preferences:
        return ""
    text = ""
    if preferences.get("nickname"):
        text += f"\nUser's preferred nickname: {preferences['nickname']}"
    if preferences.get("biography"):
        text += f"\nUser's biography: {preferences['biography']}"
    if preferences.get("instructions"):
        text += f"\nUser's instructions: {preferences['instructions']}"
    return text


def prompt_mode(active_tools: Iterable[str]) -> str:
    """Pick the template for the active tools. Research outranks search."""
    active = set(active_tools)
    if "research" in active:
        return "research"
    if "search" in active:
        return "search"
    return "default"


def get_prompt(preferences: dict[str, Any] | None, active_tools: Iterable[str] = ()) -> str:
    active = list(active_tools)
    guidelines = {
        "default": _DEFAULT_GUIDELINES,
        "search": _SEARCH_GUIDELINES,
        "research": _RESEARCH_GUIDELINES,
    }[prompt_mode(active)]
    tools_text = f"\n\nAvailable tools: {', '.join(active)}" if active else ""
    return _BASE_PROMPT.format(
        preferences=_preferences_text(preferences),
        tools=tools_text,
        mode_guidelines=guidelines,
    )


def title_prompt(message: str) -> str:
    return TITLE_PROMPT.format(message=message)


def research_prompt(prompt: str) -> str:
    return RESEARCH_PROMPT.format(prompt=prompt)
