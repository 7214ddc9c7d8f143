"""Source maps linking expression nodes to emitted CEL fragments."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class SourceMapEntry:
    """One sub-expression and where it landed in the output.

    Attributes:
        node_type: Node class name (Reference, Binary, ...)
        source_span: (start, end) in the parsed source text, None for built nodes
        output_start: Offset of the fragment in the emitted text
        output_end: End offset (exclusive) of the fragment
        fragment: The emitted text itself
        path: Location of the expression within the scanned value
    """
    node_type: str
    source_span: Optional[tuple[int, int]]
    output_start: int
    output_end: int
    fragment: str
    path: str = ''

    def to_dict(self) -> dict:
        d = {
            'node_type': self.node_type,
            'output': [self.output_start, self.output_end],
            'fragment': self.fragment,
        }
        if self.source_span is not None:
            d['source'] = list(self.source_span)
        if self.path:
            d['path'] = self.path
        return d


@dataclass
class SourceMap:
    entries: list[SourceMapEntry] = field(default_factory=list)

    def add(self, entry: SourceMapEntry) -> None:
        self.entries.append(entry)

    def extend(self, other: 'SourceMap') -> None:
        self.entries.extend(other.entries)

    def at_output(self, offset: int, path: str = '') -> Optional[SourceMapEntry]:
        """Innermost entry whose fragment covers an output offset."""
        best = None
        for entry in self.entries:
            if entry.path != path:
                continue
            if entry.output_start <= offset < entry.output_end:
                if best is None or (entry.output_end - entry.output_start) < (best.output_end - best.output_start):
                    best = entry
        return best

    def for_source(self, start: int, end: int, path: str = '') -> list[SourceMapEntry]:
        """Entries emitted for exactly this source span."""
        return [e for e in self.entries if e.path == path and e.source_span == (start, end)]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def to_list(self) -> list[dict]:
        return [e.to_dict() for e in self.entries]
