"""Base64 VLQ codec for source map ``mappings``.

Decoded mappings are a list of generated lines, each a list of segments.
A segment is a tuple of absolute values:

- ``(generated_column,)``
- ``(generated_column, source_index, original_line, original_column)``
- ``(generated_column, source_index, original_line, original_column, name_index)``

Lines and columns are 0-based. In the encoded form every field except the
generated column is relative to the previous segment across the whole map;
the generated column resets at each line.
"""

from __future__ import annotations

from nextcov.core.errors import SourceMapError

Segment = tuple[int, ...]
DecodedMappings = list[list[Segment]]

_B64 = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_B64_INDEX = {c: i for i, c in enumerate(_B64)}

_SHIFT = 5
_MASK = (1 << _SHIFT) - 1
_CONTINUATION = 1 << _SHIFT


def decode_vlq(text: str) -> list[int]:
    """Decode one comma-free run of VLQ values."""
    values: list[int] = []
    value = 0
    shift = 0
    for ch in text:
        digit = _B64_INDEX.get(ch)
        if digit is None:
            raise SourceMapError.decode_failed(text, f"invalid base64 character {ch!r}")
        value += (digit & _MASK) << shift
        if digit & _CONTINUATION:
            shift += _SHIFT
            continue
        negative = value & 1
        value >>= 1
        values.append(-value if negative else value)
        value = 0
        shift = 0
    if shift:
        raise SourceMapError.decode_failed(text, "truncated VLQ value")
    return values


def encode_vlq(value: int) -> str:
    vlq = (-value << 1) | 1 if value < 0 else value << 1
    out = []
    while True:
        digit = vlq & _MASK
        vlq >>= _SHIFT
        if vlq:
            digit |= _CONTINUATION
        out.append(_B64[digit])
        if not vlq:
            return "".join(out)


def decode_mappings(mappings: str) -> DecodedMappings:
    """Decode a ``mappings`` string into absolute segments.

    Raises:
        SourceMapError: On invalid characters or malformed segments.
    """
    lines: DecodedMappings = []
    source = original_line = original_column = name = 0
    for line_text in mappings.split(";"):
        column = 0
        line: list[Segment] = []
        if line_text:
            for seg_text in line_text.split(","):
                if not seg_text:
                    continue
                fields = decode_vlq(seg_text)
                if len(fields) not in (1, 4, 5):
                    raise SourceMapError.decode_failed(
                        mappings, f"segment {seg_text!r} has {len(fields)} fields"
                    )
                column += fields[0]
                if len(fields) == 1:
                    line.append((column,))
                    continue
                source += fields[1]
                original_line += fields[2]
                original_column += fields[3]
                if len(fields) == 5:
                    name += fields[4]
                    line.append((column, source, original_line, original_column, name))
                else:
                    line.append((column, source, original_line, original_column))
        lines.append(line)
    return lines


def encode_mappings(decoded: DecodedMappings) -> str:
    """Encode absolute segments back into a ``mappings`` string."""
    out_lines = []
    source = original_line = original_column = name = 0
    for line in decoded:
        column = 0
        parts = []
        for segment in line:
            text = encode_vlq(segment[0] - column)
            column = segment[0]
            if len(segment) >= 4:
                text += encode_vlq(segment[1] - source)
                text += encode_vlq(segment[2] - original_line)
                text += encode_vlq(segment[3] - original_column)
                source, original_line, original_column = segment[1], segment[2], segment[3]
                if len(segment) == 5:
                    text += encode_vlq(segment[4] - name)
                    name = segment[4]
            parts.append(text)
        out_lines.append(",".join(parts))
    return ";".join(out_lines)
