from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class SourceInfo:
    size_bytes: int
    page_count: int


class JobProcessor(Protocol):
    def convert(
        self,
        input_ref: str,
        source_format: str,
        target_format: str,
        options: dict[str, Any],
    ) -> str:
        """Convert the input and return a reference to the produced artifact.

        ``options["page_range"]`` (1-based, inclusive) restricts the conversion
        to a segment of the source. This is a blocking call; callers offload it
        to a thread. Failures are raised as ``ConversionError`` subclasses.
        """

    def describe(self, input_ref: str, source_format: str) -> SourceInfo:
        """Report the input's size and page count without converting it."""

    def read_output(self, output_ref: str) -> bytes:
        ...

    def discard_output(self, output_ref: str) -> None:
        ...


class ObjectStore(Protocol):
    def put(self, data: bytes) -> str:
        ...

    def get(self, ref: str) -> bytes:
        ...

    def delete(self, ref: str) -> None:
        ...
