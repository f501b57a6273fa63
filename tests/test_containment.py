import os
from dataclasses import replace

import pytest

from imsg_bridge.errors import AttachmentPolicyError
from imsg_bridge.outbound.containment import assert_safe_outbound_file


def test_file_inside_sandbox_is_allowed(outbound_policy):
    path = outbound_policy.sandbox_root / "photo.jpg"
    path.write_bytes(b"jpeg")
    assert assert_safe_outbound_file(str(path), outbound_policy) == path.resolve()


def test_nested_file_is_allowed(outbound_policy):
    nested = outbound_policy.sandbox_root / "a" / "b"
    nested.mkdir(parents=True)
    (nested / "doc.pdf").write_bytes(b"%PDF")
    assert assert_safe_outbound_file(str(nested / "doc.pdf"), outbound_policy).name == "doc.pdf"


def test_file_outside_sandbox_is_rejected(outbound_policy, tmp_path):
    secret = tmp_path / "secret.txt"
    secret.write_text("token")
    with pytest.raises(AttachmentPolicyError, match="IMSG_ALLOW_ARBITRARY_FILES"):
        assert_safe_outbound_file(str(secret), outbound_policy)


def test_dot_dot_escape_is_rejected(outbound_policy, tmp_path):
    (tmp_path / "secret.txt").write_text("token")
    sneaky = os.path.join(str(outbound_policy.sandbox_root), "..", "secret.txt")
    with pytest.raises(AttachmentPolicyError):
        assert_safe_outbound_file(sneaky, outbound_policy)


def test_sibling_prefix_directory_is_rejected(outbound_policy, tmp_path):
    sibling = tmp_path / "outbound-evil"
    sibling.mkdir()
    (sibling / "x.jpg").write_bytes(b"x")
    with pytest.raises(AttachmentPolicyError):
        assert_safe_outbound_file(str(sibling / "x.jpg"), outbound_policy)


def test_symlink_escaping_sandbox_is_rejected(outbound_policy, tmp_path):
    secret = tmp_path / "secret.txt"
    secret.write_text("token")
    link = outbound_policy.sandbox_root / "innocent.jpg"
    link.symlink_to(secret)
    with pytest.raises(AttachmentPolicyError, match="realpath"):
        assert_safe_outbound_file(str(link), outbound_policy)


def test_symlink_within_sandbox_is_rejected(outbound_policy):
    real = outbound_policy.sandbox_root / "real.jpg"
    real.write_bytes(b"jpeg")
    link = outbound_policy.sandbox_root / "link.jpg"
    link.symlink_to(real)
    with pytest.raises(AttachmentPolicyError, match="symlink"):
        assert_safe_outbound_file(str(link), outbound_policy)


def test_directory_is_rejected(outbound_policy):
    folder = outbound_policy.sandbox_root / "folder"
    folder.mkdir()
    with pytest.raises(AttachmentPolicyError, match="non-file"):
        assert_safe_outbound_file(str(folder), outbound_policy)


def test_missing_file_is_rejected(outbound_policy):
    with pytest.raises(AttachmentPolicyError, match="not accessible"):
        assert_safe_outbound_file(str(outbound_policy.sandbox_root / "gone.jpg"), outbound_policy)


def test_size_limit(outbound_policy):
    path = outbound_policy.sandbox_root / "big.bin"
    path.write_bytes(b"x" * 11)
    limited = replace(outbound_policy, max_attachment_bytes=10)
    with pytest.raises(AttachmentPolicyError, match="larger than 10 bytes"):
        assert_safe_outbound_file(str(path), limited)
    assert assert_safe_outbound_file(str(path), replace(outbound_policy, max_attachment_bytes=11))


def test_override_allows_any_path(outbound_policy, tmp_path):
    secret = tmp_path / "secret.txt"
    secret.write_text("token")
    relaxed = replace(outbound_policy, allow_arbitrary_paths=True)
    assert assert_safe_outbound_file(str(secret), relaxed) == secret
