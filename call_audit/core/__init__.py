"""Transcript assembly, timeline building, and intermediate representation.

WHY: The core package holds the citation contract of the engine: how
word-level transcripts become speaker turns and numbered chunks, and how
chunks are laid out in the timeline the model reads. Everything else
(analysis, evidence checks, reruns) depends on these shapes.

HOW: ir.py defines the dataclasses, assembler.py turns words into turns
and chunks, timeline.py orders recordings and renders the prompt text.

RULES:
- IR dataclasses are the contract — change with care
- Assembly is deterministic; same words + chunk size → same chunk_index
- No model or network logic in this package
"""
