"""
テスト共通フィクスチャ

小さなRGBAラスターとレイヤー列を用意する。
"""
import sys
import os
import numpy as np
import pytest

# リポジトリ直下のモジュールを読めるようにする
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from pixel_buffer import PixelBuffer
from layer_stack import LayerRecord, LayerStack, LayerType


def make_image(width, height, rgb=(120, 80, 40), alpha=255):
    """単色RGBA画像"""
    return PixelBuffer.blank(width, height, (*rgb, alpha))


@pytest.fixture
def solid_image():
    """8x8 不透明単色"""
    return make_image(8, 8)


@pytest.fixture
def bordered_image():
    """30x30: 外周10pxが白、中央10x10が赤"""
    image = make_image(30, 30, rgb=(255, 255, 255))
    image.data[10:20, 10:20, :3] = (200, 30, 30)
    return image


@pytest.fixture
def translucent_center_image():
    """4x4: 中央2x2だけ alpha=128、RGBは一様"""
    image = make_image(4, 4, rgb=(90, 90, 90))
    image.data[1:3, 1:3, 3] = 128
    return image


@pytest.fixture
def random_image():
    rng = np.random.default_rng(7)
    data = rng.integers(0, 256, size=(12, 10, 4), dtype=np.uint8)
    return PixelBuffer(data)


@pytest.fixture
def frame():
    return LayerRecord.frame('workframe')


@pytest.fixture
def populated_stack(frame):
    """フレーム + scene 1 + character 2 + prop 2 + effect 1"""
    stack = LayerStack()
    stack.insert(frame)
    for name, kind in (
        ('sky', LayerType.SCENE),
        ('hero', LayerType.CHARACTER),
        ('villain', LayerType.CHARACTER),
        ('sword', LayerType.PROP),
        ('shield', LayerType.PROP),
        ('spark', LayerType.EFFECT),
    ):
        stack.insert(LayerRecord(name=name), kind)
    return stack
