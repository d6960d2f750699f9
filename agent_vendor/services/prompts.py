"""System prompt composition for agent chats."""

DEFAULT_SYSTEM_PROMPT = "You are a friendly assistant! Keep your responses concise and helpful."

SEARCH_PROMPT = (
    "You can search the web with the searchTool and read pages with the retrieveTool. "
    "Use them when the question depends on current or external information, and cite "
    "the sources you relied on."
)

KNOWLEDGE_HEADER = "Use the following knowledge when it is relevant to the user's request:"


def build_system_prompt(
    agent_system_prompt: str | None,
    knowledge: list[str] | None = None,
    has_search_tool: bool = False,
) -> str:
    sections = [(agent_system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT]

    snippets = [k.strip() for k in knowledge or [] if k and k.strip()]
    if snippets:
        sections.append("\n\n".join([KNOWLEDGE_HEADER, *(f"<knowledge>\n{s}\n</knowledge>" for s in snippets)]))

    if has_search_tool:
        sections.append(SEARCH_PROMPT)

    return "\n\n".join(sections)
