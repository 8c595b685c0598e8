import os
import sys

from pathlib import Path
from PIL import Image

from _helpers import *

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

def _ensure_test_images():
    data_dir = Path(__file__).parent / "data"
    data_dir.mkdir(exist_ok=True)

    rgb_path = data_dir / "rgb.png"
    if not rgb_path.exists():
        img = Image.new("RGB", (64, 64), (128, 128, 128))
        for x in range(10, 30):
            for y in range(10, 30):
                img.putpixel((x, y), (200, 50, 50))
        img.save(rgb_path, format="PNG")

    jpg_path = data_dir / "rgb.jpg"
    if not jpg_path.exists():
        img = Image.open(rgb_path).convert("RGB")
        img.save(jpg_path, format="JPEG")

    gif_path = data_dir / "rgb.gif"
    if not gif_path.exists():
        img = Image.open(rgb_path).convert("P")
        img.save(gif_path, format="GIF")

    text_path = data_dir / "not_an_image.png"
    if not text_path.exists():
        text_path.write_bytes(b"definitely not a png")


_ensure_test_images()
