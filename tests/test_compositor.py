"""
Compositor のテスト（Porter-Duff Over とスタックの書き出し）
"""
import numpy as np
import pytest

from pixel_buffer import PixelBuffer
from layer_stack import LayerRecord, LayerStack, LayerType
from compositor import Compositor, CompositeConfig


def rgba(color, w=2, h=2):
    return PixelBuffer.blank(w, h, color)


class TestComposite:

    def test_opaque_over_replaces(self):
        result = Compositor().composite(rgba((0, 0, 255, 255)).data, rgba((200, 10, 0, 255)).data)
        assert tuple(result[0, 0]) == (200, 10, 0, 255)

    def test_transparent_over_keeps_base(self):
        result = Compositor().composite(rgba((0, 0, 255, 255)).data, rgba((200, 10, 0, 0)).data)
        assert tuple(result[0, 0]) == (0, 0, 255, 255)

    def test_both_transparent_is_black_transparent(self):
        result = Compositor().composite(rgba((9, 9, 9, 0)).data, rgba((7, 7, 7, 0)).data)
        assert tuple(result[0, 0]) == (0, 0, 0, 0)

    def test_half_alpha_blend(self):
        result = Compositor().composite(rgba((0, 0, 0, 255)).data, rgba((255, 255, 255, 128)).data)
        r, g, b, a = result[0, 0]
        assert a == 255
        assert 127 <= r <= 129

    def test_shape_mismatch_asserts(self):
        with pytest.raises(AssertionError):
            Compositor().composite(rgba((0, 0, 0, 0), 2, 2).data, rgba((0, 0, 0, 0), 3, 2).data)


class TestFlatten:

    def test_z_order_follows_stack(self):
        stack = LayerStack()
        red = LayerRecord(name='red', image=rgba((255, 0, 0, 255), 4, 4))
        blue = LayerRecord(name='blue', image=rgba((0, 0, 255, 255), 2, 2), x=1, y=1)
        # 後から挿入しても帯の順で下になる
        stack.insert(blue, LayerType.EFFECT)
        stack.insert(red, LayerType.SCENE)

        flat = Compositor().flatten(stack, 4, 4)
        assert flat.pixel(0, 0) == (255, 0, 0, 255)
        assert flat.pixel(1, 1) == (0, 0, 255, 255)
        assert flat.pixel(3, 3) == (255, 0, 0, 255)

    def test_layers_clipped_to_canvas(self):
        stack = LayerStack()
        stack.insert(LayerRecord(name='off', image=rgba((0, 255, 0, 255), 3, 3), x=-2, y=2), 'prop')
        flat = Compositor().flatten(stack, 3, 3)
        assert flat.pixel(0, 2) == (0, 255, 0, 255)
        assert flat.pixel(1, 2) == (0, 0, 0, 0)
        assert flat.pixel(0, 0) == (0, 0, 0, 0)

    def test_frame_can_be_excluded(self):
        stack = LayerStack()
        stack.insert(LayerRecord.frame(image=rgba((255, 255, 255, 255), 2, 2)))
        compositor = Compositor(CompositeConfig(include_frame=False))
        assert compositor.flatten(stack, 2, 2).pixel(0, 0) == (0, 0, 0, 0)
        assert Compositor().flatten(stack, 2, 2).pixel(0, 0) == (255, 255, 255, 255)

    def test_flatten_region_defaults_to_frame(self):
        stack = LayerStack()
        stack.insert(LayerRecord.frame(image=rgba((255, 255, 255, 255), 2, 2)))
        stack.insert(LayerRecord(name='dot', image=rgba((0, 0, 0, 255), 1, 1), x=1, y=1), 'prop')
        stack.objects()[0].x = 1
        stack.objects()[0].y = 1
        flat = Compositor().flatten_region(stack)
        assert flat.size == (2, 2)
        assert flat.pixel(0, 0) == (0, 0, 0, 255)
        assert flat.pixel(1, 1) == (255, 255, 255, 255)

    def test_flatten_region_needs_frame_or_region(self):
        with pytest.raises(ValueError):
            Compositor().flatten_region(LayerStack())
