"""
OpenCVユーティリティ
画像の入出力（BGRA⇔RGBA変換はここだけで行う）
"""
import logging
import cv2
import numpy as np
from pathlib import Path
from typing import Tuple, Union

from pixel_buffer import PixelBuffer, ImageDecodeError

logger = logging.getLogger(__name__)


def _to_bgra(img: np.ndarray) -> np.ndarray:
    """デコード結果をBGRAに揃える（アルファなしは255で補完）"""
    if img.ndim == 2:  # グレースケール
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    elif img.shape[2] == 3:  # BGR（アルファなし）
        img = cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
        img[:, :, 3] = 255  # 不透明アルファ
    elif img.shape[2] == 4:  # BGRA
        pass  # そのまま
    else:
        raise ImageDecodeError(f"Unsupported image format: {img.shape}")

    # 16bit PNGなどは8bitに落とす
    if img.dtype != np.uint8:
        img = (img / 257).astype(np.uint8) if img.dtype == np.uint16 else img.astype(np.uint8)
    return img


def decode_image(data: Union[bytes, np.ndarray]) -> PixelBuffer:
    """メモリ上のエンコード済み画像をデコード

    Args:
        data: PNG/JPEG等のバイト列

    Returns:
        RGBA PixelBuffer

    Raises:
        ImageDecodeError: デコード失敗時
    """
    buf = np.frombuffer(data, dtype=np.uint8) if isinstance(data, (bytes, bytearray)) else data
    if buf.size == 0:
        raise ImageDecodeError("Empty image data")
    img = cv2.imdecode(buf, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise ImageDecodeError("Failed to decode image data")
    return PixelBuffer.from_bgra(_to_bgra(img))


def load_image_as_rgba(path: str) -> PixelBuffer:
    """画像をRGBAとして読み込み

    Args:
        path: 画像ファイルパス

    Returns:
        RGBA PixelBuffer

    Raises:
        ImageDecodeError: 読み込み/デコード失敗時
    """
    # 日本語パス対応: np.fromfile + imdecode
    try:
        buf = np.fromfile(path, dtype=np.uint8)
    except (OSError, IOError) as e:
        raise ImageDecodeError(f"Failed to load image: {path}") from e
    try:
        image = decode_image(buf)
    except ImageDecodeError as e:
        raise ImageDecodeError(f"Failed to load image: {path}") from e
    logger.debug("Loaded %s (%dx%d)", path, image.width, image.height)
    return image


def save_image(filepath: str, image: PixelBuffer) -> bool:
    """
    画像を保存

    Args:
        filepath: ファイルパス
        image: RGBA PixelBuffer

    Returns:
        成功時True
    """
    try:
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        # 日本語パス対応: imencode + tofile
        ext = path.suffix.lower()
        if ext in ('.jpg', '.jpeg'):
            ext = '.jpg'
        elif ext == '':
            # 拡張子なしの場合は.pngを付与
            ext = '.png'
            path = path.with_suffix('.png')
        success, buf = cv2.imencode(ext, image.to_bgra())
        if success:
            buf.tofile(str(path))
            return True
        logger.warning("Encoding failed for %s", filepath)
        return False
    except (OSError, cv2.error) as e:
        logger.error("Save error: %s", e)
        return False


def encode_png(image: PixelBuffer) -> bytes:
    """PNGバイト列にエンコード"""
    success, buf = cv2.imencode('.png', image.to_bgra())
    if not success:
        raise ValueError("PNG encoding failed")
    return buf.tobytes()


def rgba_to_qimage(rgba: np.ndarray) -> 'QImage':
    """RGBA→QImage（Format_RGBA8888、ストレートアルファ）"""
    from PySide6.QtGui import QImage

    rgba = np.ascontiguousarray(rgba)
    h, w, ch = rgba.shape
    return QImage(rgba.data, w, h, w * ch, QImage.Format.Format_RGBA8888).copy()


def create_checkerboard(size: Tuple[int, int],
                        checker_size: int = 16,
                        color1: Tuple[int, int, int] = (200, 200, 200),
                        color2: Tuple[int, int, int] = (255, 255, 255)) -> np.ndarray:
    """
    チェッカーボードパターンを作成（透明背景プレビュー用）

    Args:
        size: (h, w)

    Returns:
        RGB画像 (uint8)
    """
    h, w = size
    ys, xs = np.indices((h, w))
    even = ((xs // checker_size) + (ys // checker_size)) % 2 == 0
    result = np.empty((h, w, 3), dtype=np.uint8)
    result[even] = color1
    result[~even] = color2
    return result


def composite_on_checkerboard(image: PixelBuffer, checker_size: int = 16) -> np.ndarray:
    """透明部分をチェッカーボードで見せたRGB画像"""
    board = create_checkerboard((image.height, image.width), checker_size).astype(np.float32)
    alpha = image.alpha.astype(np.float32)[:, :, None] / 255.0
    rgb = image.rgb.astype(np.float32)
    return (rgb * alpha + board * (1 - alpha) + 0.5).astype(np.uint8)
