"""Client wrapper for streaming text-generation requests."""

from __future__ import annotations

import json
import logging
from contextlib import closing
from typing import Dict, Iterator, Optional

import requests

from .config import GenerationConfig
from .errors import GenerationStreamError

logger = logging.getLogger(__name__)


class GenerationStreamClient:
    """Thin wrapper around a generate endpoint that answers with NDJSON."""

    def __init__(self, config: GenerationConfig) -> None:
        self.config = config

    def stream(self, prompt: str, *, model: Optional[str] = None) -> Iterator[str]:
        """Yield text fragments from the model as they arrive.

        Each call performs a new request; the returned iterator cannot be
        resumed.  Fragments may be empty strings.  Undecodable lines are
        skipped.  A record with ``done`` set ends the iteration.  An
        ``error`` record, a body that ends without a ``done`` record, a
        non-200 status or a transport failure raises
        :class:`GenerationStreamError`.  The connection is released on
        every exit path, including when the caller closes the iterator
        early.
        """
        payload: Dict[str, object] = {
            "model": model or self.config.model,
            "prompt": prompt,
        }

        logger.info("Streaming generation from %s using model %s", self.config.endpoint, payload["model"])
        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                stream=True,
                timeout=(self.config.connect_timeout, self.config.read_timeout),
            )
        except requests.RequestException as exc:
            raise GenerationStreamError(f"generation request failed: {exc}") from exc

        with closing(response):
            if response.status_code != 200:
                raise GenerationStreamError(f"generation backend returned status code {response.status_code}")

            try:
                for raw_line in response.iter_lines():
                    if not raw_line:
                        continue
                    record = self._decode(raw_line)
                    if record is None:
                        continue
                    if record.get("error"):
                        raise GenerationStreamError(f"generation backend reported an error: {record['error']}")

                    yield self._extract_fragment(record)

                    if record.get("done"):
                        logger.debug("Generation stream reported completion")
                        return
            except requests.RequestException as exc:
                raise GenerationStreamError(f"error reading generation stream: {exc}") from exc

            raise GenerationStreamError("generation stream ended before completion")

    @staticmethod
    def _decode(raw_line: bytes) -> Optional[Dict[str, object]]:
        try:
            record = json.loads(raw_line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug("Skipping non-JSON stream line: %r", raw_line)
            return None
        if not isinstance(record, dict):
            logger.debug("Skipping stream record that is not an object: %r", record)
            return None
        return record

    @staticmethod
    def _extract_fragment(record: Dict[str, object]) -> str:
        fragment = record.get("response")
        if fragment is None:
            return ""
        return str(fragment)
