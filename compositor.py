"""
画像合成プロセッサー
レイヤースタックをZ順に重ねて1枚に書き出す
"""
import logging
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple

from pixel_buffer import PixelBuffer
from layer_stack import LayerStack

logger = logging.getLogger(__name__)


@dataclass
class CompositeConfig:
    """合成設定"""
    background: Tuple[int, int, int, int] = (0, 0, 0, 0)  # キャンバス下地（RGBA）
    include_frame: bool = True                            # フレームも描画するか


class Compositor:
    """画像合成クラス（RGBA専用、ストレートアルファ）"""

    def __init__(self, config: CompositeConfig = None):
        self.config = config or CompositeConfig()

    def composite(
        self,
        base_image: np.ndarray,    # RGBA (ストレートアルファ)
        over_image: np.ndarray     # RGBA (ストレートアルファ)
    ) -> np.ndarray:  # RGBA
        """ベースに前景を合成（Porter-Duff Over演算）

        ストレートアルファのPorter-Duff Over:
        α_out = α_over + α_base * (1 - α_over)
        C_out = (C_over * α_over + C_base * α_base * (1 - α_over)) / α_out

        ※α_out == 0 のピクセルは黒(0,0,0,0)

        Args:
            base_image: ベース画像 (RGBA, uint8)
            over_image: 前景画像 (RGBA, uint8, 同サイズ)

        Returns:
            合成画像 (RGBA, uint8)
        """
        assert base_image.shape == over_image.shape, \
            f"Shape {over_image.shape} doesn't match base shape {base_image.shape}"

        # float32に変換し0-1正規化
        base = base_image.astype(np.float32) / 255.0
        over = over_image.astype(np.float32) / 255.0

        alpha_base = base[:, :, 3:4]
        alpha_over = over[:, :, 3:4]
        rgb_base = base[:, :, :3]
        rgb_over = over[:, :, :3]

        alpha_out = alpha_over + alpha_base * (1 - alpha_over)

        # RGB計算（ゼロ除算回避）
        rgb_out = np.zeros_like(rgb_base)
        mask = alpha_out[:, :, 0] > 0
        rgb_out[mask] = (
            rgb_over[mask] * alpha_over[mask] +
            rgb_base[mask] * alpha_base[mask] * (1 - alpha_over[mask])
        ) / alpha_out[mask]

        result = np.concatenate([rgb_out, alpha_out], axis=2)
        return np.clip(result * 255.0 + 0.5, 0, 255).astype(np.uint8)

    def paste(self, canvas: np.ndarray, layer: PixelBuffer, x: int, y: int) -> np.ndarray:
        """レイヤーを(x, y)に重ねる（キャンバス外ははみ出し分を切り捨て）"""
        ch, cw = canvas.shape[:2]
        x1, y1 = max(0, x), max(0, y)
        x2, y2 = min(cw, x + layer.width), min(ch, y + layer.height)
        if x1 >= x2 or y1 >= y2:
            return canvas

        result = canvas.copy()
        src = layer.data[y1 - y:y2 - y, x1 - x:x2 - x]
        result[y1:y2, x1:x2] = self.composite(canvas[y1:y2, x1:x2], src)
        return result

    def flatten(self, stack: LayerStack, width: int, height: int) -> PixelBuffer:
        """スタックを最背面から順に重ねる

        Args:
            stack: レイヤースタック
            width, height: キャンバスサイズ

        Returns:
            合成結果 (RGBA)
        """
        canvas = PixelBuffer.blank(width, height, self.config.background).data
        drawn = 0
        for obj in stack:
            if obj.image is None:
                continue
            if obj.is_frame and not self.config.include_frame:
                continue
            canvas = self.paste(canvas, obj.image, obj.x, obj.y)
            drawn += 1
        logger.debug("Flattened %d/%d layers into %dx%d", drawn, len(stack), width, height)
        return PixelBuffer(canvas)

    def flatten_region(self, stack: LayerStack,
                       region: Optional[Tuple[int, int, int, int]] = None) -> PixelBuffer:
        """指定矩形 (x, y, w, h) だけを書き出す。Noneならフレーム範囲"""
        if region is None:
            frame = stack.frame
            if frame is None or frame.image is None:
                raise ValueError("No region given and the stack has no frame image")
            region = (frame.x, frame.y, frame.image.width, frame.image.height)

        rx, ry, rw, rh = region
        canvas = PixelBuffer.blank(rw, rh, self.config.background).data
        for obj in stack:
            if obj.image is None:
                continue
            if obj.is_frame and not self.config.include_frame:
                continue
            canvas = self.paste(canvas, obj.image, obj.x - rx, obj.y - ry)
        return PixelBuffer(canvas)
