from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


async def iter_sse(lines: AsyncIterable[str]) -> AsyncIterator[ServerSentEvent]:
    """
    Turn text/event-stream lines into events.
    A blank line dispatches the pending event; comment lines (leading ':') are skipped
    and an event cut off by the end of the stream is dropped.
    """
    event, data, event_id, retry = None, [], None, None
    async for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data or event is not None:
                yield ServerSentEvent(event or "message", "\n".join(data), event_id, retry)
            event, data, retry = None, [], None
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
        elif name == "id":
            event_id = value
        elif name == "retry" and value.isdigit():
            retry = int(value)
