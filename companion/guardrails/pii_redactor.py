"""Deterministic PII detection and redaction using regex patterns.

Markers contain no digits or separators any pattern can match, so redacting
already-redacted text is a no-op.
"""
import re
from typing import List, Tuple
from companion.models import PIIType, PIIMetadata, RedactionResult


class PIIRedactor:
    """Regex PII detector for Chinese-locale personal identifiers."""

    # Detection priority: earlier entries win ties on equal spans
    # (an 18-digit ID number also looks like a bank card number).
    PATTERNS: List[Tuple[PIIType, "re.Pattern[str]", str]] = [
        (PIIType.ID_CARD, re.compile(r'(?<![0-9])[0-9]{17}[0-9Xx](?![0-9Xx])'), "[身份证已脱敏]"),
        (PIIType.BANK_CARD, re.compile(r'(?<![0-9])[0-9]{16,19}(?![0-9])'), "[卡号已脱敏]"),
        (PIIType.PHONE, re.compile(r'(?<![0-9])(?:\+?86[-\s]?)?1[3-9][0-9]{9}(?![0-9])'), "[手机号已脱敏]"),
        (PIIType.EMAIL, re.compile(r'[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}'), "[邮箱已脱敏]"),
        (PIIType.QQ, re.compile(r'QQ[：:\s]\s*[0-9]{5,11}', re.IGNORECASE), "QQ: [已脱敏]"),
        (PIIType.WECHAT, re.compile(r'微信[号：:\s]\s*[：:]?\s*[A-Za-z][A-Za-z0-9_-]{5,19}'), "微信号: [已脱敏]"),
        (PIIType.IP_ADDRESS, re.compile(r'(?<![0-9.])(?:[0-9]{1,3}\.){3}[0-9]{1,3}(?![0-9.])'), "[IP已脱敏]"),
    ]

    def detect(self, text: str) -> List[Tuple[int, int, PIIType, str]]:
        """
        Find non-overlapping PII spans.

        Args:
            text: Text to scan

        Returns:
            List of (start, end, type, marker) sorted by position
        """
        detections: List[Tuple[int, int, int, PIIType, str]] = []
        for priority, (pii_type, pattern, marker) in enumerate(self.PATTERNS):
            for match in pattern.finditer(text):
                detections.append((match.start(), match.end(), priority, pii_type, marker))

        # Earliest start first, then longest span, then pattern priority
        detections.sort(key=lambda d: (d[0], -(d[1] - d[0]), d[2]))

        kept: List[Tuple[int, int, PIIType, str]] = []
        last_end = -1
        for start, end, _, pii_type, marker in detections:
            if start >= last_end:
                kept.append((start, end, pii_type, marker))
                last_end = end
        return kept

    def redact(self, text: str) -> RedactionResult:
        """
        Detect and redact PII from text.

        Args:
            text: Original text

        Returns:
            RedactionResult with redacted text and PII metadata
        """
        pieces: List[str] = []
        pii_list: List[PIIMetadata] = []
        cursor = 0
        out_len = 0

        for start, end, pii_type, marker in self.detect(text):
            pieces.append(text[cursor:start])
            out_len += start - cursor
            pii_list.append(PIIMetadata(
                type=pii_type,
                marker=marker,
                position_start=out_len,
                position_end=out_len + len(marker),
            ))
            pieces.append(marker)
            out_len += len(marker)
            cursor = end

        pieces.append(text[cursor:])

        return RedactionResult(
            redacted_message="".join(pieces),
            pii_metadata=pii_list,
            redaction_count=len(pii_list),
        )
