"""Typed failures reported by the recompression engine."""


class RecodeError(Exception):
    """Base class for every recompression failure."""


class DecodeFailed(RecodeError):
    """The source bytes could not be decoded (corrupt, truncated or unsupported)."""


class EncodeOutOfMemory(RecodeError):
    """Encoding ran out of memory on every try."""


class BudgetUnreachable(RecodeError):
    """No subsample factor can bring the image within the budget."""


class AttemptsExhausted(RecodeError):
    """The attempt loop finished without meeting the byte budget."""


class EnvelopeTooLarge(RecodeError):
    """The assembled message exceeds the transport's hard size ceiling."""

    def __init__(self, total_bytes: int, ceiling: int):
        super().__init__(
            f'Message is {total_bytes} bytes, ceiling is {ceiling} bytes'
        )
        self.total_bytes = total_bytes
        self.ceiling = ceiling
