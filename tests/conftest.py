from __future__ import annotations

import io
import warnings
import zipfile
from pathlib import Path
from typing import Callable, Iterable, Tuple, Union

import pytest

FIXED_DATE = (2024, 5, 6, 7, 8, 10)

EntrySpec = Union[Tuple[str, bytes], Tuple[str, bytes, int]]


def _build_archive(entries: Iterable[EntrySpec]) -> bytes:
    buf = io.BytesIO()
    with warnings.catch_warnings():
        # Duplicate names are part of some fixtures
        warnings.simplefilter("ignore", UserWarning)
        with zipfile.ZipFile(buf, "w") as zf:
            for entry in entries:
                name, data = entry[0], entry[1]
                info = zipfile.ZipInfo(name, date_time=FIXED_DATE)
                info.compress_type = entry[2] if len(entry) > 2 else zipfile.ZIP_DEFLATED
                info.external_attr = (0o644 & 0xFFFF) << 16
                zf.writestr(info, data)
    return buf.getvalue()


@pytest.fixture
def make_archive() -> Callable[[Iterable[EntrySpec]], bytes]:
    return _build_archive


@pytest.fixture
def sample_bytes() -> bytes:
    return _build_archive(
        [
            ("README.txt", b"hello zipmap\n" * 40, zipfile.ZIP_DEFLATED),
            ("data/raw.bin", bytes(range(256)), zipfile.ZIP_STORED),
            ("docs/", b"", zipfile.ZIP_STORED),
            ("docs/guide.md", "# Guide\n\nUnicode: żółw\n".encode("utf-8"), zipfile.ZIP_DEFLATED),
        ]
    )


@pytest.fixture
def sample_zip(tmp_path: Path, sample_bytes: bytes) -> Path:
    path = tmp_path / "sample.zip"
    path.write_bytes(sample_bytes)
    return path
