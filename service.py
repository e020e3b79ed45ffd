# service.py
import asyncio
import base64
import json
import logging
import re
from datetime import date
from typing import Optional, Sequence

import backoff
from openai import AsyncOpenAI, RateLimitError
from pydantic import ValidationError

from schemas import ClassifierResult, parse_classifier_payload

# --- Логи
logger = logging.getLogger(__name__)

# --- Константы пайплайна
TEMP = 0.2
MAX_TOKENS = 4096

PROMPT = """You are an expert wildlife biologist and taxonomist.

First assess whether the image is good enough for identification: resolution,
obstruction, distance, exposure and blur. If it is not, return JSON:
{"identified": false,
 "reason": "low_resolution" | "obstructed" | "too_distant" | "poor_quality" | "no_animal",
 "qualityIssue": "what exactly is wrong",
 "suggestion": "how the user can take a better photo"}

Otherwise identify the animal. Only go down to the taxonomic level you are at
least 90% confident about; use "Genus sp." when the species is uncertain and
leave subspecies null when it cannot be determined. Rule out similar species
explicitly. Return JSON only:
{"identified": true,
 "identificationLevel": "subspecies/species/genus/family",
 "confidence": 0.0,
 "commonName": "",
 "scientificName": "",
 "taxonomy": {"kingdom": "Animalia", "phylum": "", "class": "", "order": "",
              "family": "", "subfamily": "", "genus": "", "species": null, "subspecies": null},
 "confidenceLevels": {"family": 0.0, "genus": 0.0, "species": 0.0, "subspecies": 0.0},
 "similarSpeciesRuledOut": ["Species name - why it was ruled out"],
 "identificationReasoning": "",
 "sex": "Male/Female/Unknown",
 "lifeStage": "Adult/Juvenile/Immature/Unknown",
 "morph": null,
 "migratoryStatus": null,
 "description": "",
 "geographicRange": "",
 "iucnStatus": {"global": "LC/NT/VU/EN/CR/EW/EX/DD/NE", "local": null}}

If there is no animal: {"identified": false, "reason": "no_animal",
"qualityIssue": "No animal detected in the image",
"suggestion": "Please send a photo containing an animal"}"""

_RATE_LIMIT_MARKERS = ("quota", "rate limit", "rate_limit", "429", "resource exhausted", "resource_exhausted")
_JSON_RX = re.compile(r"\{.*\}", re.S)


class ClassifierUnavailable(Exception):
    """Every model and retry failed for transport reasons."""


def build_prompt(location: Optional[str] = None, target: Optional[str] = None, today: Optional[date] = None) -> str:
    prompt = PROMPT
    if target:
        prompt += (
            f'\n\nIDENTIFICATION TARGET: the user wants you to identify "{target}". '
            "If several animals are visible, identify only the one matching this description. "
            'If it cannot be found return {"identified": false, "reason": "target_not_found", '
            '"qualityIssue": "Could not find the specified subject in the image", '
            '"suggestion": "Describe the animal more clearly or send a photo where it is more visible"}'
        )
    if location:
        today = today or date.today()
        prompt += (
            f"\n\nGEOGRAPHIC CONTEXT: Location: {location}. Current date: {today:%B %Y}. "
            "Consider resident, wintering, breeding and passage migrant species for this place "
            "and season, but never let geography override visual evidence."
        )
    return prompt


def extract_json(text: str) -> dict:
    """Pull the JSON object out of a model answer, tolerating markdown fences."""
    cleaned = text.replace("```json", "").replace("```", "")
    match = _JSON_RX.search(cleaned)
    if not match:
        raise ValueError("No valid JSON in response")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("JSON answer is not an object")
    return data


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


class AnimalClassifier:
    """Vision model call: image + context in, Identification or QualityFailure out.

    Rate-limit shaped errors are retried on the same model with exponential
    backoff (backoff, 2*backoff, ... seconds). Any other error moves on to the
    next model. When every model is exhausted ``ClassifierUnavailable`` is raised.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        models: Sequence[str],
        attempts: int = 3,
        backoff: float = 20.0,
        timeout: float = 60.0,
    ) -> None:
        self._client = client
        self.models = [m for m in models if m]
        self.attempts = attempts
        self.backoff = backoff
        self.timeout = timeout
        self._ask_with_retries = self._retrying(self._ask)

    def _retrying(self, call):
        return backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=self.attempts,
            giveup=lambda e: not is_rate_limited(e),
            on_backoff=self._log_backoff,
            logger=None,
            jitter=None,
            factor=self.backoff,
        )(call)

    def _log_backoff(self, details: dict) -> None:
        model = details["args"][0] if details.get("args") else "?"
        logger.warning(
            f"[classify] {model} quota limit hit, waiting {details['wait']:.0f}s "
            f"before retry {details['tries'] + 1}/{self.attempts}"
        )

    async def _ask(self, model: str, prompt: str, image: bytes, mime_type: str) -> ClassifierResult:
        image_b64 = base64.b64encode(image).decode("ascii")
        rsp = await asyncio.wait_for(
            self._client.chat.completions.create(
                model=model,
                temperature=TEMP,
                max_tokens=MAX_TOKENS,
                response_format={"type": "json_object"},
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}},
                        ],
                    }
                ],
            ),
            timeout=self.timeout,
        )
        text = rsp.choices[0].message.content or ""
        logger.info(f"[classify] {model} responded: {text[:300]!r}")
        return parse_classifier_payload(extract_json(text))

    async def classify(
        self,
        image: bytes,
        mime_type: str = "image/png",
        location: Optional[str] = None,
        target: Optional[str] = None,
    ) -> ClassifierResult:
        prompt = build_prompt(location, target)
        last_error: Optional[BaseException] = None

        for model in self.models:
            try:
                logger.info(f"[classify] trying {model}")
                return await self._ask_with_retries(model, prompt, image, mime_type)
            except (ValueError, ValidationError) as e:
                logger.error(f"[classify] {model} returned unusable answer: {e}")
                last_error = e
            except Exception as e:
                logger.error(f"[classify] {model} failed: {e}")
                last_error = e

        raise ClassifierUnavailable(str(last_error) if last_error else "no classifier models configured")
