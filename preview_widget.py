"""
プレビューウィジェット
切り抜き画像をチェッカーボード上に表示（マスクのハイライト付き）
"""
import logging
import cv2
import numpy as np
from typing import Optional
from PySide6.QtWidgets import QWidget, QVBoxLayout, QLabel, QScrollArea
from PySide6.QtCore import Qt, Signal
from PySide6.QtGui import QPixmap, QMouseEvent

from pixel_buffer import PixelBuffer
from mask_transform import CategoryMask, mask_overlay
from compositor import Compositor
from cv2_utils import rgba_to_qimage, composite_on_checkerboard

logger = logging.getLogger(__name__)


class PreviewWidget(QWidget):
    """画像プレビューウィジェット"""

    # シグナル
    image_clicked = Signal(int, int)  # x, y（画像座標）
    scale_changed = Signal(float)     # scale

    def __init__(self, parent=None):
        super().__init__(parent)

        self.setMinimumSize(400, 400)

        # 画像データ
        self.image: Optional[PixelBuffer] = None
        self.mask: Optional[CategoryMask] = None

        # 表示設定
        self.show_mask = True
        self.checker_size = 16
        self._compositor = Compositor()

        # スケール
        self.scale = 1.0
        self.min_scale = 0.1
        self.max_scale = 5.0

        # レイアウト
        layout = QVBoxLayout(self)
        layout.setContentsMargins(0, 0, 0, 0)

        self.label = QLabel("画像を選択してください")
        self.label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.label.setStyleSheet("background-color: #2b2b2b; color: #888;")

        self.scroll = QScrollArea()
        self.scroll.setWidget(self.label)
        self.scroll.setWidgetResizable(True)

        layout.addWidget(self.scroll)

        self.setStyleSheet("background-color: #1e1e1e;")

    def set_image(self, image: Optional[PixelBuffer]):
        """表示画像を設定"""
        self.image = image
        self.update_display()

    def set_mask(self, mask: Optional[CategoryMask]):
        """マスクを設定（ハイライト表示用）"""
        self.mask = mask
        self.update_display()

    def set_show_mask(self, show: bool):
        """マスク表示設定"""
        self.show_mask = show
        self.update_display()

    def set_scale(self, scale: float):
        """スケール設定"""
        self.scale = max(self.min_scale, min(self.max_scale, scale))
        self.scale_changed.emit(self.scale)
        self.update_display()

    def zoom_in(self):
        self.set_scale(self.scale * 1.2)

    def zoom_out(self):
        self.set_scale(self.scale / 1.2)

    def fit_to_window(self):
        """ウィンドウにフィット"""
        if self.image is None:
            return
        available_w = self.scroll.viewport().width() - 20
        available_h = self.scroll.viewport().height() - 20
        scale_w = available_w / self.image.width if self.image.width > 0 else 1.0
        scale_h = available_h / self.image.height if self.image.height > 0 else 1.0
        self.set_scale(min(scale_w, scale_h, 1.0))  # 1.0より大きくしない

    def update_display(self):
        """表示を更新"""
        if self.image is None:
            self.label.setPixmap(QPixmap())
            self.label.setText("画像を選択してください")
            return

        display = self._create_display_image()

        # スケール適用
        if self.scale != 1.0:
            h, w = display.shape[:2]
            new_w = max(1, int(w * self.scale))
            new_h = max(1, int(h * self.scale))
            display = cv2.resize(display, (new_w, new_h), interpolation=cv2.INTER_NEAREST)

        try:
            pixmap = QPixmap.fromImage(rgba_to_qimage(display))
            self.label.setPixmap(pixmap)
        except (ValueError, RuntimeError) as e:
            logger.error("Display error: %s", e)

    def _create_display_image(self) -> np.ndarray:
        """表示用RGBA画像を作成"""
        rgb = composite_on_checkerboard(self.image, self.checker_size)
        display = np.dstack([rgb, np.full(rgb.shape[:2], 255, dtype=np.uint8)])

        if self.show_mask and self.mask is not None:
            overlay = mask_overlay(self.mask, self.image.width, self.image.height)
            display = self._compositor.composite(display, overlay.data)

        return display

    def screen_to_image(self, x: int, y: int) -> tuple:
        """スクリーン座標を画像座標に変換"""
        # Pixmapのオフセットを計算（中央揃えの場合）
        pixmap = self.label.pixmap()
        if pixmap and not pixmap.isNull():
            offset_x = (self.label.width() - pixmap.width()) // 2
            offset_y = (self.label.height() - pixmap.height()) // 2
            x = x - max(0, offset_x)
            y = y - max(0, offset_y)

        img_x = int(x / self.scale)
        img_y = int(y / self.scale)
        return img_x, img_y

    def mousePressEvent(self, event: QMouseEvent):
        """クリック位置を画像座標で通知"""
        if self.image is None or event.button() != Qt.MouseButton.LeftButton:
            return
        pos = self.label.mapFrom(self, event.position().toPoint())
        img_x, img_y = self.screen_to_image(pos.x(), pos.y())
        if 0 <= img_x < self.image.width and 0 <= img_y < self.image.height:
            self.image_clicked.emit(img_x, img_y)

    def wheelEvent(self, event):
        """ホイールイベント（ズーム）"""
        if event.angleDelta().y() > 0:
            self.zoom_in()
        else:
            self.zoom_out()
