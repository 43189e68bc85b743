"""External game generator clients."""

from __future__ import annotations

import html as html_lib
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from config import settings
from services.errors import GeneratorError

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]


def get_openai_client(api_key: Optional[str]) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(api_key=api_key, timeout=float(settings.GENERATOR_TIMEOUT_SECONDS))


class GameGenerator:
    """Produces raw generator text for a chat-style message list."""

    name = "base"

    async def generate(self, messages: List[Dict[str, str]], on_chunk: Optional[ChunkCallback] = None) -> str:
        raise NotImplementedError


class OpenAIGameGenerator(GameGenerator):
    name = "openai"

    def __init__(self, client: AsyncOpenAI, model: Optional[str] = None, max_tokens: Optional[int] = None):
        self.client = client
        self.model = model or settings.GENERATOR_MODEL
        self.max_tokens = int(max_tokens or settings.GENERATOR_MAX_TOKENS)

    async def generate(self, messages: List[Dict[str, str]], on_chunk: Optional[ChunkCallback] = None) -> str:
        text = ""
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content or ""
                if not delta:
                    continue
                text += delta
                if on_chunk is not None:
                    await on_chunk(delta)
        except OpenAIError as exc:
            logger.warning("OpenAI generation failed: %s", exc)
            raise GeneratorError(f"Error during AI generation: {exc}") from exc

        if not text:
            raise GeneratorError("No response from AI")
        return text


class FallbackGameGenerator(GameGenerator):
    """
    Offline generator used when no OpenAI key is configured.

    Produces a small playable canvas game so the studio, billing and version
    flows work end to end in development.
    """

    name = "fallback"
    chunk_size = 400

    def _render(self, request: str, existing_html: Optional[str]) -> Dict[str, str]:
        title = (request.strip().split("\n")[0][:40] or "Neon Dodge").title()
        safe_title = html_lib.escape(title)
        body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{safe_title}</title>
<style>html,body{{margin:0;background:#05010f;overflow:hidden}}canvas{{display:block}}</style>
</head>
<body>
<canvas id="game"></canvas>
<script>
const c = document.getElementById('game'), g = c.getContext('2d');
function fit() {{ c.width = window.innerWidth; c.height = window.innerHeight; }}
fit(); window.addEventListener('resize', fit);
let x = c.width / 2, score = 0, over = false, rocks = [];
window.addEventListener('keydown', e => {{
  if (e.key === 'ArrowLeft' || e.key === 'a') x -= 24;
  if (e.key === 'ArrowRight' || e.key === 'd') x += 24;
}});
function tick() {{
  if (over) return;
  g.fillStyle = '#05010f'; g.fillRect(0, 0, c.width, c.height);
  if (Math.random() < 0.05) rocks.push({{x: Math.random() * c.width, y: 0}});
  g.fillStyle = '#ff2bd6';
  rocks.forEach(r => {{ r.y += 6; g.fillRect(r.x, r.y, 14, 14);
    if (r.y > c.height - 40 && Math.abs(r.x - x) < 20) {{ over = true;
      window.parent.postMessage({{ type: 'GAME_OVER', score: score }}, '*'); }} }});
  rocks = rocks.filter(r => r.y < c.height);
  g.fillStyle = '#00f0ff'; g.fillRect(x - 12, c.height - 30, 24, 12);
  score += 1; g.fillText('SCORE ' + score, 12, 20);
  requestAnimationFrame(tick);
}}
tick();
</script>
</body>
</html>"""
        if existing_html:
            body = existing_html.replace("</body>", f"<!-- {html_lib.escape(request[:80])} -->\n</body>", 1)
        return {
            "message": "Initializing physics engine...",
            "html": body,
            "suggestedTitle": title,
            "suggestedDescription": f"An arcade take on: {request[:80]}",
        }

    async def generate(self, messages: List[Dict[str, str]], on_chunk: Optional[ChunkCallback] = None) -> str:
        request = messages[-1]["content"] if messages else ""
        existing_html = None
        if "```html" in request:
            existing_html = request.split("```html", 1)[1].split("```", 1)[0].strip()
            request = request.split("REQUEST:", 1)[-1].split("INSTRUCTIONS:", 1)[0].strip()
        text = json.dumps(self._render(request, existing_html))
        if on_chunk is not None:
            for start in range(0, len(text), self.chunk_size):
                await on_chunk(text[start:start + self.chunk_size])
        return text


def get_game_generator() -> GameGenerator:
    """FastAPI dependency; tests override it with scripted generators."""
    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        logger.info("OPENAI_API_KEY not configured, using fallback game generator")
        return FallbackGameGenerator()
    return OpenAIGameGenerator(client)
