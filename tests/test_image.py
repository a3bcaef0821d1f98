import numpy as np
import pytest
from PIL import Image

from patchmvs.image import (
    BORDER,
    CENSUS,
    COLOR,
    GRADIENT,
    GRAYSCALE,
    ImageChannels,
    compute_census,
    compute_gradient,
    load_image,
    required_channels,
)
from patchmvs.metrics.census import popcount64


def test_channels_are_read_only(textured_rgb):
    img = ImageChannels.from_rgb(textured_rgb, {GRADIENT, CENSUS})
    assert img.channels == {COLOR, GRAYSCALE, GRADIENT, CENSUS}
    for arr in (img.color, img.grayscale, img.gradient, img.census):
        with pytest.raises(ValueError):
            arr[0, 0] = 0
    # the caller's array is left writable
    textured_rgb[0, 0] = 1


def test_required_channels():
    assert required_channels("pm") == {COLOR, GRAYSCALE, GRADIENT}
    assert required_channels("census") == {COLOR, GRAYSCALE, CENSUS}
    assert required_channels("ncc") == {COLOR, GRAYSCALE}


def test_census_bit_count(textured_rgb):
    gray = np.asarray(Image.fromarray(textured_rgb).convert("L"))
    census = compute_census(gray)
    assert census.dtype == np.uint64
    h, w = gray.shape
    bits = popcount64(census)
    assert bits.max() <= 62
    # border pixels carry no signal
    assert np.all(census[:BORDER] == 0)
    assert np.all(census[:, w - BORDER:] == 0)
    # a pixel brighter than its whole 9x7 neighborhood sets every bit
    peak = np.zeros((20, 20), dtype=np.uint8)
    peak[10, 10] = 255
    assert popcount64(compute_census(peak))[10, 10] == 62
    assert popcount64(compute_census(peak))[10, 12] == 0


def test_gradient_of_ramp():
    ramp = np.tile(np.arange(0, 60, 2, dtype=np.uint8), (30, 1))
    grad = compute_gradient(ramp)
    assert grad.shape == (30, 30, 2)
    inner = grad[BORDER:-BORDER, BORDER:-BORDER]
    np.testing.assert_allclose(inner[..., 0], 2.0)
    np.testing.assert_allclose(inner[..., 1], 0.0)
    assert np.all(grad[:BORDER] == 0.0)


def test_save_load_round_trip(tmp_path, textured_rgb):
    img = ImageChannels.from_rgb(textured_rgb, {GRADIENT, CENSUS})
    paths = {ch: str(tmp_path / f"{ch}.bin") for ch in (COLOR, GRAYSCALE, GRADIENT, CENSUS)}
    assert img.save(paths)
    loaded = ImageChannels.load(paths, {GRADIENT, CENSUS})
    assert loaded is not None
    np.testing.assert_array_equal(loaded.color, img.color)
    np.testing.assert_array_equal(loaded.grayscale, img.grayscale)
    np.testing.assert_array_equal(loaded.gradient, img.gradient)
    np.testing.assert_array_equal(loaded.census, img.census)


def test_load_missing_channel(tmp_path, textured_rgb):
    img = ImageChannels.from_rgb(textured_rgb)
    paths = {ch: str(tmp_path / f"{ch}.bin") for ch in (COLOR, GRAYSCALE, GRADIENT)}
    assert img.save(paths)
    assert ImageChannels.load(paths, {GRADIENT}) is None


def test_load_image_pyramid(tmp_path, textured_rgb):
    path = str(tmp_path / "img.png")
    Image.fromarray(textured_rgb).save(path)
    full = load_image(path, 0, {GRADIENT})
    half = load_image(path, 1, ())
    assert (full.width, full.height) == (40, 40)
    assert (half.width, half.height) == (20, 20)
    assert full.gradient is not None and half.gradient is None
    with pytest.raises(FileNotFoundError):
        load_image(str(tmp_path / "missing.png"), 0, ())
