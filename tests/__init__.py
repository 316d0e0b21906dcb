"""Test suite for the DiaLoop library.

The structure mirrors the `DiaLoop` package (e.g. `tests.learning` for
`DiaLoop.learning`). Shared series builders live in `tests.helpers`.
"""
