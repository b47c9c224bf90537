"""System prompt assembly for quest conversations.

The prompt is rebuilt from the quest's equipped skills and integrations on
every turn: fixed output instructions, then each skill's effect text, then a
section telling the assistant which environment variables hold API keys.
Key values never appear in the prompt, only ``$ENV_VAR`` references.
"""

from typing import Optional, Sequence

from agent.claude_session import IntegrationConfig

BASE_INSTRUCTIONS = """## Output Format for Code Changes
When making changes to files, always output a summary of the changes in diff format, grouped by file name:

### filename.ext
```diff
- removed line
+ added line
```

### another-file.ext
```diff
- old code
+ new code
```

This helps the user quickly see what was modified.

## Style Guidelines
- Do NOT use emojis. Use ASCII symbols only (e.g., *, -, >, #, =, +, etc.)
- Keep output clean and terminal-friendly"""

_FETCH_EXAMPLE = """IMPORTANT: Use Node.js with fetch() for HTTP requests (curl is blocked). Example:
```bash
node -e "fetch('https://api.example.com/graphql', {
  method: 'POST',
  headers: { 'Content-Type': 'application/json', 'Authorization': process.env.API_KEY },
  body: JSON.stringify({ query: '...' })
}).then(r => r.json()).then(console.log)"
```"""


def build_integration_section(integrations: Sequence[IntegrationConfig]) -> Optional[str]:
    """The "API Key Integrations" section, or None without usable API keys."""
    keyed = [i for i in integrations if i.has_api_key]
    if not keyed:
        return None
    lines = "\n".join(
        f"- {i.display_name}: API key available in environment variable ${i.env_variable}"
        for i in keyed
    )
    names = ", ".join(i.display_name for i in keyed)
    return (
        f"\n## API Key Integrations\n{lines}\n\n{_FETCH_EXAMPLE}\n"
        f"Do NOT use curl or MCP tools for {names}."
    )


def build_system_prompt(skills: Sequence = (), integrations: Sequence[IntegrationConfig] = ()) -> str:
    """
    Assemble the system prompt for one turn.

    Args:
        skills: Equipped skills; anything with an ``effect`` string.
        integrations: Equipped integrations.
    """
    parts = [BASE_INSTRUCTIONS]
    effects = [s.effect for s in skills if getattr(s, "effect", None)]
    if effects:
        parts.append("\n".join(effects))
    section = build_integration_section(integrations)
    if section:
        parts.append(section)
    return "\n\n".join(parts)
