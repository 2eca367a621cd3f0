"""
Quiz question generation over an OpenAI-compatible chat completions API.
Includes exponential backoff for rate-limit (429) responses and a strict
parser for the Q1:/A)/Correct: answer format (JSON arrays also accepted).
"""

import asyncio
import json
import logging
import re
import time
import random
import requests

from checkpoint_quiz.core.error_codes import QuizError, GenerationError, QuotaExceededError
from checkpoint_quiz.core.constants import (
    ErrorCode, GENERATION_API_BASE, GENERATION_MODEL,
    GENERATION_TEMPERATURE, GENERATION_MAX_TOKENS,
    MAX_QUESTIONS_PER_UNIT, QUIZ_INPUT_CHAR_LIMIT,
)
from checkpoint_quiz.core.models import Question
from checkpoint_quiz.core.text_utils import trim_text_to_limit

logger = logging.getLogger(__name__)

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubles each retry with jitter
_REQUEST_TIMEOUT_SEC = 90

_OPTION_RE = re.compile(r'^([A-D])\)\s*', re.IGNORECASE)
_CORRECT_RE = re.compile(r'Correct:\s*([A-D])', re.IGNORECASE)
_QUESTION_SPLIT_RE = re.compile(r'Q\d+:')

_PROMPT_HEADER = """You are an expert educator creating engaging multiple-choice questions that check solid understanding without being overly tricky.

Video Content:
\"\"\"
{text}
\"\"\"

CRITICAL REQUIREMENTS:
1. Focus on core concepts, relationships, or practical implications from the video.
2. Prefer WHY or HOW questions, but include a clear comprehension check when it reinforces the main idea.
3. Avoid pure rote memorization or extreme trick questions.
4. Keep language clear and supportive.

Question Design Rules:
- Write EXACTLY {n} questions (Q1..Q{n}) with 4 options each (A-D)
- Each question should highlight a DIFFERENT key insight from the content.
- Make ALL options plausible and connected to the topic; avoid "None of the above".
- Keep all options similar in length and style.

Output format (STRICT):"""

_PROMPT_BLOCK = """
Q{i}: [Question]
A) [Option]
B) [Option]
C) [Option]
D) [Option]
Correct: [A|B|C|D]"""

_SUMMARY_PROMPT = (
    "Summarize the key points of this educational video transcript as plain text. "
    "Keep concepts, relationships and conclusions; drop filler.\n\n{text}"
)


def clamp_question_count(desired_count: int) -> int:
    return max(1, min(MAX_QUESTIONS_PER_UNIT, int(desired_count or 1)))


def build_quiz_prompt(text: str, desired_count: int) -> str:
    n = clamp_question_count(desired_count)
    prompt_text = trim_text_to_limit(text, QUIZ_INPUT_CHAR_LIMIT)
    if len(prompt_text) < len(text):
        logger.warning("Segment text truncated for quiz prompt due to size limit")
    prompt = _PROMPT_HEADER.format(text=prompt_text, n=n) + '\n' + _PROMPT_BLOCK.format(i=1)
    for i in range(2, n + 1):
        prompt += '\n\n' + _PROMPT_BLOCK.format(i=i)
    return prompt


# ── Response parsing ──────────────────────────────────────────────────

def _parse_json_questions(data) -> list[Question]:
    questions = []
    if not isinstance(data, list):
        return questions
    for item in data:
        if not isinstance(item, dict):
            continue
        options = item.get('options')
        if not item.get('question') or not isinstance(options, list) or len(options) < 2:
            continue
        correct = item.get('answer', item.get('correct', 0))
        try:
            questions.append(Question(question=str(item['question']),
                                      options=[str(o) for o in options],
                                      correct=int(correct)))
        except (TypeError, ValueError) as e:
            logger.debug("Skipping JSON question: %s", e)
    return questions


def _parse_block(block: str) -> Question | None:
    lines = [line.strip() for line in block.strip().split('\n') if line.strip()]
    if len(lines) < 3:
        return None

    question = lines[0]
    options = []
    correct = -1
    for line in lines[1:]:
        if _OPTION_RE.match(line):
            options.append(_OPTION_RE.sub('', line, count=1).strip())
        elif line.lower().startswith('correct:'):
            m = _CORRECT_RE.search(line)
            if m:
                correct = ord(m.group(1).upper()) - ord('A')

    if not question or len(options) < 2 or not 0 <= correct < len(options):
        return None
    return Question(question=question, options=options, correct=correct)


def parse_quiz_response(response, desired_count: int = 1) -> list[Question]:
    """
    Parse a model response into questions.
    Accepts a JSON array of {question, options, answer|correct} or the
    Q1:/A)/Correct: text format. Invalid blocks are dropped; at most
    desired_count questions are returned.
    """
    if response is None:
        return []
    if not isinstance(response, str):
        response = str(response)
    stripped = response.strip()
    if not stripped:
        return []

    if stripped.startswith('[') or stripped.startswith('{'):
        try:
            questions = _parse_json_questions(json.loads(stripped))
        except json.JSONDecodeError:
            questions = []
        if questions:
            return questions[:desired_count] if desired_count > 0 else questions

    questions = []
    for block in _QUESTION_SPLIT_RE.split(stripped):
        if not block.strip():
            continue
        parsed = _parse_block(block)
        if parsed:
            questions.append(parsed)

    if desired_count > 0 and len(questions) >= desired_count:
        return questions[:desired_count]
    return questions


# ── HTTP client ───────────────────────────────────────────────────────

def _is_quota_response(resp) -> bool:
    try:
        err = resp.json().get('error') or {}
    except (ValueError, AttributeError):
        return False
    if not isinstance(err, dict):
        return False
    return err.get('code') == 'insufficient_quota' or err.get('type') == 'insufficient_quota'


class QuestionGenerator:
    """
    Generates questions and summaries with a chat completions endpoint.
    Blocking HTTP runs in a worker thread for the async API.
    """

    def __init__(self, api_key: str | None, api_base: str = GENERATION_API_BASE,
                 model: str = GENERATION_MODEL, timeout: int = _REQUEST_TIMEOUT_SEC):
        self.api_key = api_key
        self.api_base = (api_base or GENERATION_API_BASE).rstrip('/')
        self.model = model or GENERATION_MODEL
        self.timeout = timeout

    @property
    def completions_url(self) -> str:
        return f"{self.api_base}/chat/completions"

    def _complete(self, prompt: str) -> str:
        """
        POST one prompt, returning the assistant message text.
        Retries up to 4 times with exponential backoff on 429 rate-limit responses.
        """
        if not self.api_key:
            raise GenerationError("Generation API key not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": GENERATION_TEMPERATURE,
            "max_tokens": GENERATION_MAX_TOKENS,
        }

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                resp = requests.post(self.completions_url, headers=headers,
                                     json=payload, timeout=self.timeout)
            except requests.exceptions.Timeout:
                raise QuizError("Generation request timed out",
                                code=ErrorCode.NETWORK_TRANSIENT)
            except requests.exceptions.ConnectionError:
                raise QuizError("Network error connecting to generation API",
                                code=ErrorCode.NETWORK_TRANSIENT)
            except requests.exceptions.RequestException as e:
                raise GenerationError(f"Generation request failed: {e}")

            if resp.status_code == 429:
                if _is_quota_response(resp):
                    raise QuotaExceededError("Generation quota exceeded")
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Generation rate limited (429), retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    time.sleep(delay)
                    continue
                raise QuizError(f"Generation rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries",
                                code=ErrorCode.NETWORK_TRANSIENT)

            if resp.status_code != 200:
                # never log the API key
                error_body = resp.text[:300] if resp.text else "No response body"
                raise GenerationError(f"Generation API returned {resp.status_code}: {error_body}")

            try:
                data = resp.json()
                return data['choices'][0]['message']['content'] or ''
            except (ValueError, KeyError, IndexError, TypeError):
                raise GenerationError("Failed to parse generation response")

        raise QuizError("Generation request exhausted retries", code=ErrorCode.NETWORK_TRANSIENT)

    def generate_sync(self, text: str, desired_count: int) -> list[Question]:
        if not text or not text.strip():
            raise GenerationError("Segment content unavailable for quiz generation")
        n = clamp_question_count(desired_count)
        response = self._complete(build_quiz_prompt(text, n))
        questions = parse_quiz_response(response, n)
        if len(questions) < n:
            raise GenerationError(f"Language model returned {len(questions)} question(s); expected {n}")
        return questions

    def summarize_sync(self, text: str) -> str | None:
        if not text or not text.strip():
            return None
        result = self._complete(_SUMMARY_PROMPT.format(text=text))
        return result.strip() or None

    async def generate(self, text: str, desired_count: int) -> list[Question]:
        return await asyncio.to_thread(self.generate_sync, text, desired_count)

    async def summarize(self, text: str) -> str | None:
        return await asyncio.to_thread(self.summarize_sync, text)
