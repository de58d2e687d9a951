from __future__ import annotations

import textwrap

import pytest

from vmpatch.tools.normalize import PatchDialect, PatchNormalizer, normalize_patch

BSD_PATCH = (
    b"diff -Nru orig/foo-1.2.3/src/file.c src/foo-1.2.3/src/file.c\n"
    b"--- orig/foo-1.2.3/src/file.c\t2024-01-01 10:00:00.000000000 +0100\n"
    b"+++ src/foo-1.2.3/src/file.c\t2024-01-02 11:00:00.000000000 +0100\n"
    b"@@ -1,2 +1,2 @@\n"
    b" int a;\n"
    b"-int b;\n"
    b"+int c;\n"
)


def _normalizer() -> PatchNormalizer:
    return PatchNormalizer(projects=("foo", "qemu", "virglrenderer"))


def test_bsd_pair_rewritten_to_ab_prefixes() -> None:
    result = _normalizer().normalize(BSD_PATCH)

    lines = result.split(b"\n")
    assert lines[0] == b"diff -Nru a/src/file.c b/src/file.c"
    assert lines[1] == b"--- a/src/file.c\t2024-01-01 10:00:00.000000000 +0100"
    assert lines[2] == b"+++ b/src/file.c\t2024-01-02 11:00:00.000000000 +0100"
    assert lines[3:] == BSD_PATCH.split(b"\n")[3:]


def test_detect_dialect() -> None:
    normalizer = _normalizer()
    assert normalizer.detect_dialect(BSD_PATCH) is PatchDialect.BSD_NRU
    assert normalizer.detect_dialect(b"--- a/qemu-9.2.2/hw/x.c\n+++ b/qemu-9.2.2/hw/x.c\n") is PatchDialect.LEGACY_AB
    assert normalizer.detect_dialect(b"diff --git a/x b/x\n--- a/x\n+++ b/x\n") is PatchDialect.CANONICAL


@pytest.mark.parametrize(
    "raw",
    [
        BSD_PATCH,
        b"--- a/qemu-9.2.2/hw/x.c\n+++ b/qemu-9.2.2/hw/x.c\n@@ -1 +1 @@\n-a\n+b\n",
        b"--- orig/virglrenderer-1.1.1/src/v.c\n+++ virglrenderer-1.1.1/src/v.c\n@@ -1 +1 @@\n-a\n+b\n",
        b"diff -Nru /dev/null src/qemu-1.0/new.c\n--- /dev/null\n+++ src/qemu-1.0/new.c\n@@ -0,0 +1 @@\n+x\n",
        b"",
    ],
)
def test_normalize_is_idempotent(raw: bytes) -> None:
    normalizer = _normalizer()
    once = normalizer.normalize(raw)
    assert normalizer.normalize(once) == once


def test_legacy_ab_prefixed_headers_lose_version_directory() -> None:
    raw = textwrap.dedent(
        """\
        Index: qemu-9.2.2/hw/x.c
        --- a/qemu-9.2.2/hw/x.c
        +++ b/qemu-9.2.2/hw/x.c
        @@ -1 +1 @@
        -old
        +new
        """
    ).encode()

    result = normalize_patch(raw)

    assert b"Index: hw/x.c\n" in result
    assert b"--- a/hw/x.c\n+++ b/hw/x.c\n" in result


def test_unmatched_patch_passes_through_byte_identical() -> None:
    raw = b"diff --git a/hw/x.c b/hw/x.c\r\n--- a/hw/x.c\r\n+++ b/hw/x.c\r\n@@ -1 +1 @@\r\n-a\r\n+b\r\n"
    assert _normalizer().normalize(raw) == raw


def test_hunk_bodies_are_untouched() -> None:
    raw = (
        b"--- a/qemu-9.2.2/doc.txt\n"
        b"+++ b/qemu-9.2.2/doc.txt\n"
        b"@@ -1,2 +1,2 @@\n"
        b" see qemu-9.2.2/README\n"
        b"---- qemu-9.2.2/old\n"
        b"+++++ qemu-9.2.2/new\n"
    )

    result = _normalizer().normalize(raw)

    assert result.split(b"\n")[:2] == [b"--- a/doc.txt", b"+++ b/doc.txt"]
    assert result.split(b"\n")[3:] == raw.split(b"\n")[3:]


def test_project_name_must_not_be_a_word_tail() -> None:
    raw = b"--- a/myqemu-1.2/x.c\n+++ b/myqemu-1.2/x.c\n"
    assert _normalizer().normalize(raw) == raw


def test_dev_null_side_is_preserved() -> None:
    raw = b"--- /dev/null\t1970-01-01 00:00:00\n+++ src/qemu-1.0/new.c\t2024-01-01 00:00:00\n@@ -0,0 +1 @@\n+x\n"

    result = _normalizer().normalize(raw, PatchDialect.BSD_NRU)

    assert result.startswith(b"--- /dev/null\t1970-01-01 00:00:00\n+++ b/new.c\t2024-01-01 00:00:00\n")


def test_normalizer_requires_project_names() -> None:
    with pytest.raises(ValueError):
        PatchNormalizer(projects=("", "  "))


def test_bare_version_directory_gains_ab_prefixes() -> None:
    raw = (
        b"diff -u qemu-9.2.2/ui/gl.c qemu-9.2.2/ui/gl.c\n"
        b"--- qemu-9.2.2/ui/gl.c\t2024-01-01 00:00:00\n"
        b"+++ qemu-9.2.2/ui/gl.c\t2024-01-02 00:00:00\n"
        b"@@ -1 +1 @@\n"
        b"-int gl = 0;\n"
        b"+int gl = 1;\n"
    )

    result = _normalizer().normalize(raw, PatchDialect.CANONICAL)

    assert result.split(b"\n")[:3] == [
        b"diff -u a/ui/gl.c b/ui/gl.c",
        b"--- a/ui/gl.c\t2024-01-01 00:00:00",
        b"+++ b/ui/gl.c\t2024-01-02 00:00:00",
    ]
    assert _normalizer().normalize(result) == result
