"""Content Generation Gateway — async wrapper around the OpenAI API.

Two operations are exposed to the pipeline:

  complete_json()         chat completion whose reply must contain one JSON object
  complete_structured()   chat completion parsed into a fixed pydantic schema
  generate_image()        image generation returning PNG bytes and their cost

Rate limits are retried with exponential back-off; timeouts and every other
API error propagate to the caller, which treats them as ordinary block
failures.
"""
import asyncio
import base64
import json
import logging
import random
import re

import httpx
from openai import AsyncOpenAI, RateLimitError
from pydantic import BaseModel

from models.usage import Usage
from pipeline.errors import ContentGenerationMalformed
from settings import Settings

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class GeneratedImage(BaseModel):
    data: bytes
    cost: float = 0.0
    size: str = ""


def parse_json_object(content: str | None) -> dict:
    """Extract and parse the outermost ``{...}`` span of a model reply.

    Raises ContentGenerationMalformed when there is none or it is not a JSON object.
    """
    match = _JSON_OBJECT.search(content or "")
    if not match:
        raise ContentGenerationMalformed("AI did not return valid JSON")
    try:
        result = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ContentGenerationMalformed(f"AI returned unparseable JSON: {exc}") from exc
    if not isinstance(result, dict):
        raise ContentGenerationMalformed("AI response is not a JSON object")
    return result


class ContentGateway:
    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self.settings = settings
        self.client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.request_timeout,
            max_retries=0,
        )

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
    ) -> tuple[dict, Usage]:
        """Run one chat completion and return the parsed JSON object with its usage."""
        response = await self._with_backoff(
            lambda: self.client.chat.completions.create(
                model=model or self.settings.content_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        )
        usage = Usage.from_completion(response.usage)
        return parse_json_object(response.choices[0].message.content), usage

    async def complete_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        response_format: type[BaseModel],
        model: str | None = None,
    ) -> tuple[BaseModel, Usage]:
        """Run one structured-output completion for replies with a fixed shape.

        Raises ContentGenerationMalformed when the model refuses or returns nothing.
        """
        response = await self._with_backoff(
            lambda: self.client.chat.completions.parse(
                model=model or self.settings.content_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format=response_format,
            )
        )
        usage = Usage.from_completion(response.usage)
        parsed = response.choices[0].message.parsed
        if parsed is None:
            raise ContentGenerationMalformed("AI returned no structured reply")
        return parsed, usage

    async def generate_image(self, description: str) -> GeneratedImage:
        response = await self._with_backoff(
            lambda: self.client.images.generate(
                model=self.settings.image_model,
                prompt=description,
                size=self.settings.image_size,
                n=1,
            )
        )
        image = response.data[0]
        if image.b64_json:
            data = base64.b64decode(image.b64_json)
        else:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as http:
                resp = await http.get(image.url)
                resp.raise_for_status()
                data = resp.content
        return GeneratedImage(data=data, cost=self._image_cost(), size=self.settings.image_size)

    def _image_cost(self) -> float:
        try:
            width, height = (int(x) for x in self.settings.image_size.split("x"))
        except ValueError:
            return 0.0
        return round(width * height / 1_000_000 * self.settings.image_cost_per_megapixel, 4)

    async def _with_backoff(self, call):
        max_retries = self.settings.max_retries
        for attempt in range(max_retries):
            try:
                return await call()
            except RateLimitError:
                if attempt == max_retries - 1:
                    raise
                delay = 2 ** attempt + random.uniform(0, 1)
                logger.debug(
                    "Rate limited; retrying in %.1fs (attempt %d/%d).",
                    delay, attempt + 1, max_retries,
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Unreachable")  # pragma: no cover
