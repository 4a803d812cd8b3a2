"""Logical test identity model."""

from pydantic import BaseModel, ConfigDict


class TestIdentity(BaseModel):
    """Stable key for a test across runs, branches and file moves.

    The fingerprint depends on the canonical title only; ``file_path`` is the
    file the test was first observed in and is metadata.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    title_path: tuple[str, ...]
    title: str
    file_path: str = ""
