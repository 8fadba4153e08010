"""Output guarding for streamed completions.

Text is forwarded only once it lies further back than the hold-back window
from the end of the guarded text, so a PII span or an echoed instruction
line is redacted before any of it reaches the client. Harmful content stops
forwarding for the rest of the turn; the safe fallback replaces it at the
end. A redaction that reaches text already sent closes the reply with the
hidden-content marker. With no window, everything is held until the
generation completes.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from companion.guardrails.output_guard import LEAK_MARKER, OutputGuard
from companion.logging_config import get_logger
from companion.models import OutputIssue

logger = get_logger(__name__)


@dataclass
class StreamResult:
    """Outcome of a guarded stream once generation has finished."""
    final_text: str
    tail: str
    issues: List[OutputIssue] = field(default_factory=list)
    content_replaced: bool = False


class GuardedStream:
    """Incremental output guard over one generation."""

    def __init__(
        self,
        guard: OutputGuard,
        system_prompt: Optional[str] = None,
        holdback_chars: Optional[int] = 48,
        finalize: Optional[Callable[[str], str]] = None,
    ):
        """
        Initialize the stream.

        Args:
            guard: Output guard applied to the accumulated text
            system_prompt: Instructions protected against verbatim echo
            holdback_chars: Window kept unsent; None buffers the whole reply
            finalize: Transformation applied to the guarded text at the end
        """
        self.guard = guard
        self.system_prompt = system_prompt
        self.finalize = finalize
        self.holdback_chars: Optional[int] = None
        if holdback_chars is not None:
            longest_line = max((len(line) for line in guard.protected_lines(system_prompt)), default=0)
            self.holdback_chars = max(holdback_chars, longest_line)

        self._raw: List[str] = []
        self._emitted = ""
        self._halted = False
        self._diverged = False

    @property
    def raw_text(self) -> str:
        return "".join(self._raw)

    @property
    def emitted_text(self) -> str:
        return self._emitted

    @property
    def halted(self) -> bool:
        return self._halted

    def feed(self, delta: str) -> str:
        """
        Add a generated delta.

        Args:
            delta: Newly generated text

        Returns:
            Guarded text that may be sent now, possibly ""
        """
        self._raw.append(delta)
        if self._halted or self.holdback_chars is None:
            return ""

        result = self.guard.check(self.raw_text, self.system_prompt)
        if OutputIssue.HARMFUL_CONTENT in result.issues:
            self._halted = True
            logger.warning("stream_halted", emitted_length=len(self._emitted))
            return ""

        guarded = result.redacted_response
        if not guarded.startswith(self._emitted):
            # A redaction reached into text already sent
            self._halted = True
            self._diverged = True
            logger.warning("stream_diverged", emitted_length=len(self._emitted))
            return ""

        safe_end = len(guarded) - self.holdback_chars
        if safe_end <= len(self._emitted):
            return ""

        chunk = guarded[len(self._emitted):safe_end]
        self._emitted += chunk
        return chunk

    def finish(self) -> StreamResult:
        """
        Run the output guard on the complete generation.

        Returns:
            StreamResult with the text to persist and the remainder to send
        """
        result = self.guard.evaluate(self.raw_text, self.system_prompt)
        final_text = result.redacted_response
        if self.finalize is not None:
            final_text = self.finalize(final_text)

        replaced = OutputIssue.HARMFUL_CONTENT in result.issues
        if replaced:
            tail = f"\n\n{final_text}" if self._emitted else final_text
        elif self._diverged or not final_text.startswith(self._emitted):
            replaced = True
            tail = LEAK_MARKER
        else:
            tail = final_text[len(self._emitted):]

        self._emitted += tail
        return StreamResult(
            final_text=final_text,
            tail=tail,
            issues=list(result.issues),
            content_replaced=replaced,
        )
