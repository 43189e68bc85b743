"""Prompt construction for game generation and iteration."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

SYSTEM_INSTRUCTION = """
You are Playable, an elite AI game engine. Your goal is to generate high-quality, performant HTML5 games in a single file.

### CORE REQUIREMENTS
1. **CONTAINED:** Output a single HTML file with embedded CSS/JS.
2. **SCORING:**
   - You MUST implement score tracking.
   - When the game ends or a high score is reached, send the score to the parent:
     `window.parent.postMessage({ type: 'GAME_OVER', score: finalScore }, '*');`
3. **CONTROLS:**
   - Use `window.addEventListener` for keyboard inputs (Arrow keys, WASD, Space).
   - Ensure controls are responsive and do not require focusing a specific element if possible.
4. **VISUALS:** Use a dark, neon, cyberpunk, or arcade aesthetic. Use Canvas API for performance.

### OUTPUT FORMAT
Return strictly raw JSON (no markdown formatting) with these fields:
- `message`: A short, hype-up message (e.g., "Initializing physics engine...").
- `html`: The complete HTML5 code.
- `suggestedTitle`: A catchy title.
- `suggestedDescription`: A short description.

### CODING RULES
- Do not use external assets (images/sounds) unless they are data URIs or reliable CDNs.
- Ensure the game resizes to fit the window (`window.innerWidth`).
- Write efficient, bug-free code.
"""

ITERATION_TEMPLATE = """
THE USER WANTS TO MODIFY THE EXISTING GAME.
HERE IS THE CURRENT SOURCE CODE:
```html
{existing_html}
```

REQUEST: {prompt}

INSTRUCTIONS:
1. Analyze the current source code.
2. Implement the requested changes while preserving existing features.
3. Return the FULLY UPDATED source code (do not return just the diff).
"""

# Conversation turns are stored with the role "model"; chat APIs call it "assistant".
ROLE_MAP = {"user": "user", "model": "assistant", "assistant": "assistant"}


def build_user_prompt(prompt: str, existing_html: Optional[str] = None) -> str:
    if not existing_html:
        return prompt
    return ITERATION_TEMPLATE.format(existing_html=existing_html, prompt=prompt)


def build_messages(
    prompt: str,
    history: Optional[Sequence[Dict[str, Any]]] = None,
    existing_html: Optional[str] = None,
) -> List[Dict[str, str]]:
    """System instruction, prior turns, then the new request."""
    messages: List[Dict[str, str]] = [{"role": "system", "content": SYSTEM_INSTRUCTION.strip()}]
    for turn in history or []:
        role = ROLE_MAP.get(str(turn.get("role") or "").lower())
        text = str(turn.get("text") or "")
        if not role or not text or turn.get("is_error"):
            continue
        messages.append({"role": role, "content": text})
    messages.append({"role": "user", "content": build_user_prompt(prompt, existing_html)})
    return messages


def describe_charge(prompt: str, iteration: bool, suggested_title: Optional[str] = None) -> str:
    """Ledger description for a generation debit."""
    if iteration:
        return f"Game iteration: {prompt[:50]}"
    return f"New game: {suggested_title or prompt[:50]}"
