import json
import logging
from typing import Callable, Iterator, List, Optional

from pydantic import BaseModel, ValidationError, validator

from ledgerwatch.ledger.errors import MalformedEvent


logger = logging.getLogger(__name__)

ON_MALFORMED_ABORT = "abort"
ON_MALFORMED_SKIP = "skip"
ON_MALFORMED_CHOICES = (ON_MALFORMED_ABORT, ON_MALFORMED_SKIP)


class TransferEvent(BaseModel):
    # One change notification per committed transfer.
    # id is the transfer id; key is opaque and only carried along.
    id: str
    key: List[str] = []
    source: str
    destination: str

    class Config:
        extra = "ignore"  # Feeds may add envelope fields (updated, mvcc...)

    @validator("id", "source", "destination")
    def must_not_be_blank(cls, v):
        if not v.strip():
            raise ValueError("must not be blank")
        return v


def parse_event_lines(
    body,
    on_malformed: str = ON_MALFORMED_ABORT,
    on_skip: Optional[Callable[[MalformedEvent], None]] = None,
) -> Iterator[TransferEvent]:
    """
    Yields TransferEvents from a newline-delimited JSON body.

    Blank lines are ignored. On a malformed line:
    - "abort": raise MalformedEvent; events before it were already yielded
    - "skip":  log it and carry on with the next line
    """
    if on_malformed not in ON_MALFORMED_CHOICES:
        raise ValueError(f"on_malformed must be one of {ON_MALFORMED_CHOICES}, got {on_malformed!r}")
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")

    for line_number, line in enumerate(body.split("\n"), start=1):
        if not line.strip():
            continue
        try:
            yield TransferEvent(**json.loads(line))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            error = MalformedEvent(line_number, str(e).splitlines()[0])
            if on_malformed == ON_MALFORMED_ABORT:
                raise error from e
            logger.warning(f"JSON parse error, skipping: {error}")
            if on_skip is not None:
                on_skip(error)
