"""Line classifiers: plain text and JSON container log envelopes."""

import json
import logging
from typing import Callable, Optional

from log_tailer.models import Channel, ClassifiedLine

logger = logging.getLogger(__name__)

Classifier = Callable[[str], ClassifiedLine]


class ClassificationError(ValueError):
    """A line could not be classified under the active format."""


def classify_plain(line: str) -> ClassifiedLine:
    """Every plain line is application stdout."""
    return ClassifiedLine(content=line, channel=Channel.STDOUT)


def classify_json(line: str) -> ClassifiedLine:
    """Parse a container envelope line.

    Expected format:
        {"log": "hello", "stream": "stdout"}
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ClassificationError("envelope is not a JSON object")

    content = data.get("log")
    if not isinstance(content, str):
        raise ClassificationError("missing or non-string 'log' field")

    stream = data.get("stream")
    try:
        channel = Channel(stream)
    except ValueError:
        raise ClassificationError(f"unknown stream {stream!r}") from None

    return ClassifiedLine(content=content, channel=channel)


CLASSIFIERS: dict[Optional[str], Classifier] = {
    None: classify_plain,
    "json": classify_json,
}


def get_classifier(fmt: Optional[str]) -> Classifier:
    try:
        return CLASSIFIERS[fmt]
    except KeyError:
        raise ValueError(f"No classifier for format {fmt!r}") from None


def classify(line: str, classifier: Classifier, source: str = "") -> Optional[ClassifiedLine]:
    """Run a classifier, logging and swallowing classification failures.

    Returns None when the line is dropped.
    """
    try:
        return classifier(line)
    except ClassificationError as e:
        logger.warning("Dropping unclassifiable line from %s: %s", source or "<unknown>", e)
        return None
