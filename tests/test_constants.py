import pytest

from llm_humorizer.constants import (
    is_image,
    mime_type_for_extension,
    normalize_code,
    sanitize_filename,
)
from llm_humorizer.image_helpers import inspect_image

from tests._helpers import make_image_bytes


def test_normalize_code():
    assert normalize_code("  ab12cd ") == "AB12CD"
    assert normalize_code(None) == ""


@pytest.mark.parametrize("name,expected", [
    ("photo.JPG", True),
    ("photo.webp", True),
    ("notes.txt", False),
    ("noext", False),
])
def test_is_image(name, expected):
    assert is_image(name) is expected


def test_mime_type_for_extension():
    assert mime_type_for_extension("JPG") == "image/jpeg"
    assert mime_type_for_extension("exe") == "application/octet-stream"


def test_sanitize_filename_strips_traversal():
    assert sanitize_filename("..%2F..%2Fetc%2Fpasswd") == "passwd"
    assert sanitize_filename("a<b>.png") == "ab.png"
    with pytest.raises(ValueError):
        sanitize_filename("...")
    with pytest.raises(ValueError):
        sanitize_filename("a" * 300)


def test_inspect_image_detects_formats(load_test_image):
    assert inspect_image(load_test_image("rgb.png")) == ("image/png", "png")
    assert inspect_image(load_test_image("rgb.jpg")) == ("image/jpeg", "jpg")
    assert inspect_image(load_test_image("rgb.gif")) == ("image/gif", "gif")
    assert inspect_image(make_image_bytes("WEBP")) == ("image/webp", "webp")


def test_inspect_image_rejects_non_images(load_test_image):
    with pytest.raises(ValueError):
        inspect_image(load_test_image("not_an_image.png"))
    with pytest.raises(ValueError):
        inspect_image(b"")
