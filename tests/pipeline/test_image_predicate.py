import os
from io import BytesIO

import pytest
from PIL import Image

from pipeline.images.predicate import (
    bad_image_reason,
    bytes_reason,
    image_dimensions,
    is_bad_image,
    url_reason,
)


def _png(width: int, height: int, noise: bool = False) -> bytes:
    if noise:
        img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    else:
        img = Image.new("RGB", (width, height), (200, 30, 30))
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.mark.parametrize(
    "url, reason",
    [
        ("https://ae01.alicdn.com/kf/Habc/photo_80x80.jpg", "small_dimensions"),
        ("https://img.alicdn.com/imgextra/i3/O1CN01abc_!!6000000001-2-tps-102-102.png", "ui_asset"),
        ("https://s.alicdn.com/@img/imgextra/i1/O1CN01x.png", "ui_pattern"),
        ("https://cdn.example.com/assets/sprite-sheet.png", "ui_pattern"),
        ("https://5.imimg.com/data/company/logo.jpg", "ui_pattern"),
        ("https://cdn.example.com/img/verified-badge.jpg", "ui_pattern"),
        ("https://export.imimg.com/style/countrySvg.png", "blocked_url"),
        ("https://cdn.example.com/a/b.svg", "svg"),
        ("https://cdn.example.com/images/no-image.jpg", "placeholder"),
        ("https://img.alicdn.com/imgextra/i1/O1CN01-2-tps-990-200.jpg", "banner"),
        ("https://cdn.example.com/cache/4e70cc58277297de2d4741c437c9dc425c4f8adb.jpg", "known_bad_hash"),
        ("", "empty"),
        (None, "empty"),
    ],
)
def test_url_reason_flags_ui_assets(url, reason):
    assert url_reason(url) == reason
    assert is_bad_image(url)


@pytest.mark.parametrize(
    "url",
    [
        "https://5.imimg.com/data5/SELLER/Default/2023/1/abc/earbuds-500x500.jpg",
        "//img.alicdn.com/imgextra/product_960x960.jpg",
        "https://image.made-in-china.com/2f0j00abc/Wireless-Earbuds.webp",
    ],
)
def test_product_images_pass(url):
    assert url_reason(url) is None
    assert not is_bad_image(url)


def test_bytes_reason_size_floor():
    assert bytes_reason(b"x" * 100) == "too_small"
    assert bytes_reason(b"x" * 100, min_bytes=50) is None
    assert bytes_reason(None) is None


def test_bytes_reason_checks_dimensions_only_when_asked():
    small = _png(100, 100)
    assert image_dimensions(small) == (100, 100)
    assert bytes_reason(small, min_bytes=0) is None
    assert bytes_reason(small, min_bytes=0, min_side=200) == "small_dimensions"
    assert bytes_reason(_png(300, 300), min_bytes=0, min_side=200) is None


def test_undecodable_bytes_are_not_judged_on_dimensions():
    data = b"\xff\xd8\xff" + b"0" * 5000
    assert image_dimensions(data) is None
    assert bytes_reason(data, min_side=200) is None


def test_bad_image_reason_prefers_url_reason():
    data = _png(300, 300, noise=True)
    assert bad_image_reason("https://cdn.example.com/logo.png", data) == "ui_pattern"
    assert bad_image_reason("https://cdn.example.com/p/item.png", data, min_side=200) is None
    assert bad_image_reason("https://cdn.example.com/p/item.png", data, min_side=400) == "small_dimensions"
