#!/usr/bin/env python3
"""
Matte Studio - 切り抜き整形ツール

画像の背景除去・マスク適用・エッジ処理を行い、
結果をタイプ別のレイヤーとして並べて書き出す。
"""
import sys
import logging
from pathlib import Path
from typing import Optional

from PySide6.QtWidgets import (
    QApplication, QMainWindow, QWidget, QVBoxLayout, QHBoxLayout,
    QLabel, QPushButton, QFileDialog, QMessageBox, QGroupBox, QSplitter,
    QSpinBox, QDoubleSpinBox, QCheckBox, QComboBox, QListWidget, QListWidgetItem
)
from PySide6.QtCore import Qt, Signal, QThread, QSettings

# パスを追加
sys.path.insert(0, str(Path(__file__).parent))

from pixel_buffer import PixelBuffer, ImageDecodeError
from background_keyer import KeyerConfig, remove_color
from edge_refiner import RefineConfig
from mask_transform import CategoryMask
from matte_pipeline import MattePipeline, PipelineConfig
from layer_stack import LayerStack, LayerRecord, LayerType
from compositor import Compositor
from preview_widget import PreviewWidget
from cv2_utils import load_image_as_rgba, save_image

logger = logging.getLogger(__name__)


class MatteWorker(QThread):
    """切り抜き処理ワーカースレッド"""
    progress = Signal(int, str)  # (進捗%, メッセージ)
    finished = Signal(tuple)     # (job_id, PixelBuffer)
    error = Signal(str)

    def __init__(self, image: PixelBuffer, mask: Optional[CategoryMask],
                 config: PipelineConfig, job_id: int, parent=None):
        super().__init__(parent)
        # ワーカーは自分専用のコピーだけを触る
        self.image = image.copy()
        self.mask = mask.copy() if mask is not None else None
        self.config = config
        self.job_id = job_id

    def run(self):
        try:
            self.progress.emit(10, "処理中...")
            result = MattePipeline(self.config).run(self.image, self.mask)
            if self.isInterruptionRequested():
                self.error.emit("キャンセルされました")
                return
            self.progress.emit(100, "完了")
            self.finished.emit((self.job_id, result))
        except Exception as e:
            logger.exception("Matte processing failed")
            self.error.emit(f"エラー: {e}")


class MatteStudioWindow(QMainWindow):
    """メインウィンドウ"""

    def __init__(self):
        super().__init__()
        self.setWindowTitle('Matte Studio - 切り抜き整形ツール')
        self.setMinimumSize(1200, 800)
        self.setAcceptDrops(True)

        self.source_image: Optional[PixelBuffer] = None
        self.source_path: str = ''
        self.result_image: Optional[PixelBuffer] = None
        self.mask: Optional[CategoryMask] = None
        self.stack = LayerStack()
        self.compositor = Compositor()
        self.worker: Optional[MatteWorker] = None
        self.current_job_id: int = 0

        # 設定保存
        self.settings = QSettings("MatteStudio", "MatteStudio")
        self._last_input_dir = ''
        self._last_output_dir = ''

        self._setup_ui()
        self._load_settings()

    # === UI構築 ===

    def _setup_ui(self):
        central = QWidget()
        self.setCentralWidget(central)
        main_layout = QHBoxLayout(central)

        self.main_splitter = QSplitter(Qt.Orientation.Horizontal)
        main_layout.addWidget(self.main_splitter)

        # 左: 設定パネル
        panel = QWidget()
        panel_layout = QVBoxLayout(panel)

        file_group = QGroupBox('入力')
        file_layout = QVBoxLayout(file_group)
        self.btn_open = QPushButton('画像を開く...')
        self.btn_open.clicked.connect(self._select_file)
        file_layout.addWidget(self.btn_open)
        self.btn_mask = QPushButton('マスクを読み込む...')
        self.btn_mask.clicked.connect(self._select_mask)
        file_layout.addWidget(self.btn_mask)
        self.lbl_info = QLabel('ファイル: 未選択')
        self.lbl_info.setStyleSheet('color: #888;')
        file_layout.addWidget(self.lbl_info)
        panel_layout.addWidget(file_group)

        # 背景除去
        keyer_group = QGroupBox('背景除去（四隅の色）')
        keyer_layout = QVBoxLayout(keyer_group)
        self.check_keyer = QCheckBox('有効')
        keyer_layout.addWidget(self.check_keyer)
        self.spin_tolerance = self._add_spin(keyer_layout, '許容距離:', 0, 441, 40, double=True)
        self.spin_sample = self._add_spin(keyer_layout, 'サンプル(px):', 1, 100, 10)
        self.spin_chroma_tolerance = self._add_spin(keyer_layout, 'クリック許容差:', 0, 255, 30)
        keyer_layout.addWidget(QLabel('プレビューをクリック: その色を透明化'))
        panel_layout.addWidget(keyer_group)

        # マスク
        mask_group = QGroupBox('マスク')
        mask_layout = QVBoxLayout(mask_group)
        self.spin_dilation = self._add_spin(mask_layout, '膨張:', 0, 20, 0)
        self.spin_mask_feather = self._add_spin(mask_layout, 'フェザー:', 0, 50, 0)
        self.check_show_mask = QCheckBox('マスクを表示')
        self.check_show_mask.setChecked(True)
        self.check_show_mask.toggled.connect(lambda on: self.preview.set_show_mask(on))
        mask_layout.addWidget(self.check_show_mask)
        panel_layout.addWidget(mask_group)

        # エッジ処理
        edge_group = QGroupBox('エッジ処理')
        edge_layout = QVBoxLayout(edge_group)
        self.check_refine = QCheckBox('有効')
        self.check_refine.setChecked(True)
        edge_layout.addWidget(self.check_refine)
        self.spin_threshold = self._add_spin(edge_layout, 'しきい値:', 0, 255, 30)
        self.spin_smooth = self._add_spin(edge_layout, '平滑化半径:', 0, 16, 2)
        self.spin_color_tol = self._add_spin(edge_layout, '色差許容:', 0, 255, 20)
        self.spin_feather = self._add_spin(edge_layout, 'フェザー幅:', 0, 32, 3)
        panel_layout.addWidget(edge_group)

        self.btn_run = QPushButton('実行')
        self.btn_run.setStyleSheet('background-color: #16a34a; color: white; font-weight: bold; padding: 10px;')
        self.btn_run.clicked.connect(self._run_pipeline)
        self.btn_run.setEnabled(False)
        panel_layout.addWidget(self.btn_run)

        self.btn_save = QPushButton('結果を保存...')
        self.btn_save.clicked.connect(self._save_result)
        self.btn_save.setEnabled(False)
        panel_layout.addWidget(self.btn_save)

        self.lbl_status = QLabel('')
        self.lbl_status.setStyleSheet('color: #888;')
        panel_layout.addWidget(self.lbl_status)
        panel_layout.addStretch()
        self.main_splitter.addWidget(panel)

        # 中央: プレビュー
        self.preview = PreviewWidget()
        self.preview.image_clicked.connect(self._on_preview_clicked)
        self.main_splitter.addWidget(self.preview)

        # 右: レイヤー
        layer_panel = QWidget()
        layer_layout = QVBoxLayout(layer_panel)
        layer_group = QGroupBox('レイヤー（上が手前）')
        group_layout = QVBoxLayout(layer_group)

        type_row = QHBoxLayout()
        type_row.addWidget(QLabel('タイプ:'))
        self.combo_type = QComboBox()
        for kind in LayerType:
            self.combo_type.addItem(kind.value, kind)
        self.combo_type.setCurrentIndex(list(LayerType).index(LayerType.PROP))
        type_row.addWidget(self.combo_type)
        group_layout.addLayout(type_row)

        self.btn_add_layer = QPushButton('結果をレイヤーに追加')
        self.btn_add_layer.clicked.connect(self._add_layer)
        self.btn_add_layer.setEnabled(False)
        group_layout.addWidget(self.btn_add_layer)

        self.list_layers = QListWidget()
        group_layout.addWidget(self.list_layers)

        move_row = QHBoxLayout()
        for text, handler in (
            ('↑', lambda: self._move_layer('up')),
            ('↓', lambda: self._move_layer('down')),
            ('最前面', lambda: self._move_layer_to_edge('top')),
            ('最背面', lambda: self._move_layer_to_edge('bottom')),
        ):
            btn = QPushButton(text)
            btn.clicked.connect(handler)
            move_row.addWidget(btn)
        group_layout.addLayout(move_row)

        self.btn_export = QPushButton('キャンバスを書き出し...')
        self.btn_export.clicked.connect(self._export_canvas)
        group_layout.addWidget(self.btn_export)

        layer_layout.addWidget(layer_group)
        self.main_splitter.addWidget(layer_panel)
        self.main_splitter.setSizes([280, 700, 260])

    def _add_spin(self, layout, label: str, minimum, maximum, value, double: bool = False):
        row = QHBoxLayout()
        row.addWidget(QLabel(label))
        spin = QDoubleSpinBox() if double else QSpinBox()
        spin.setRange(minimum, maximum)
        spin.setValue(value)
        row.addWidget(spin)
        layout.addLayout(row)
        return spin

    # === 入力 ===

    def dragEnterEvent(self, event):
        if event.mimeData().hasUrls():
            event.acceptProposedAction()

    def dropEvent(self, event):
        urls = event.mimeData().urls()
        if urls:
            self._load_image(urls[0].toLocalFile())

    def _select_file(self):
        path, _ = QFileDialog.getOpenFileName(
            self, '画像を選択', self._last_input_dir,
            '画像 (*.png *.jpg *.jpeg *.bmp *.webp)'
        )
        if path:
            self._load_image(path)

    def _load_image(self, path: str):
        try:
            image = load_image_as_rgba(path)
        except ImageDecodeError as e:
            QMessageBox.warning(self, 'エラー', f'画像の読み込みに失敗しました: {e}')
            return

        self.source_image = image
        self.source_path = path
        self.result_image = None
        self.mask = None
        self._last_input_dir = str(Path(path).parent)

        self.lbl_info.setText(f'ファイル: {Path(path).name}（{image.width} x {image.height}）')
        self.lbl_info.setStyleSheet('color: #4ade80;')
        self.preview.set_mask(None)
        self.preview.set_image(image)
        self.btn_run.setEnabled(True)
        self.btn_save.setEnabled(False)
        self.btn_add_layer.setEnabled(False)

    def _select_mask(self):
        path, _ = QFileDialog.getOpenFileName(
            self, 'マスクを選択', self._last_input_dir,
            '画像 (*.png *.bmp)'
        )
        if not path:
            return
        try:
            mask_image = load_image_as_rgba(path)
        except ImageDecodeError as e:
            QMessageBox.warning(self, 'エラー', f'マスクの読み込みに失敗しました: {e}')
            return

        # 白（非ゼロ）= オブジェクト
        self.mask = CategoryMask.from_binary(mask_image.rgb.max(axis=2))
        self.preview.set_mask(self.mask)
        self.lbl_status.setText(f'マスク: {self.mask.width} x {self.mask.height}')

    def _on_preview_clicked(self, x: int, y: int):
        """クリックした色をクロマキーで透明化"""
        target = self.result_image or self.source_image
        if target is None:
            return
        r, g, b, _ = target.pixel(x, y)
        self.result_image = remove_color(target, (r, g, b), self.spin_chroma_tolerance.value())
        self.preview.set_image(self.result_image)
        self.btn_save.setEnabled(True)
        self.btn_add_layer.setEnabled(True)
        self.lbl_status.setText(f'色 ({r}, {g}, {b}) を透明化しました')

    # === 処理 ===

    def _build_config(self) -> PipelineConfig:
        return PipelineConfig(
            remove_background=self.check_keyer.isChecked(),
            keyer=KeyerConfig(
                sample_size=self.spin_sample.value(),
                tolerance=self.spin_tolerance.value(),
            ),
            dilation=self.spin_dilation.value(),
            feather=self.spin_mask_feather.value(),
            refine_edges=self.check_refine.isChecked(),
            refine=RefineConfig(
                threshold=self.spin_threshold.value(),
                smooth_radius=self.spin_smooth.value(),
                color_tolerance=self.spin_color_tol.value(),
                feather_width=self.spin_feather.value(),
            ),
        )

    def _run_pipeline(self):
        if self.source_image is None:
            return
        if self.worker is not None and self.worker.isRunning():
            self.worker.requestInterruption()

        self.current_job_id += 1
        self.worker = MatteWorker(self.source_image, self.mask, self._build_config(), self.current_job_id)
        self.worker.progress.connect(lambda pct, msg: self.lbl_status.setText(f'{msg} ({pct}%)'))
        self.worker.finished.connect(self._on_pipeline_finished)
        self.worker.error.connect(self._on_pipeline_error)
        self.btn_run.setEnabled(False)
        self.worker.start()

    def _on_pipeline_finished(self, payload: tuple):
        job_id, result = payload
        self.btn_run.setEnabled(True)
        # 古いジョブの結果は捨てる
        if job_id != self.current_job_id:
            return
        self.result_image = result
        self.preview.set_image(result)
        self.btn_save.setEnabled(True)
        self.btn_add_layer.setEnabled(True)

    def _on_pipeline_error(self, message: str):
        QMessageBox.warning(self, 'エラー', message)
        self.btn_run.setEnabled(True)
        self.lbl_status.setText('エラー')
        self.lbl_status.setStyleSheet('color: #f87171;')

    def _save_result(self):
        if self.result_image is None:
            QMessageBox.warning(self, '警告', '処理結果がありません')
            return
        base_name = Path(self.source_path).stem if self.source_path else 'output'
        default = str(Path(self._last_output_dir or '.') / f'{base_name}_matte.png')
        path, _ = QFileDialog.getSaveFileName(self, '保存先を選択', default, 'PNG画像 (*.png)')
        if not path:
            return
        if save_image(path, self.result_image):
            self._last_output_dir = str(Path(path).parent)
            QMessageBox.information(self, '完了', f'保存しました:\n{path}')
        else:
            QMessageBox.warning(self, 'エラー', '保存に失敗しました')

    # === レイヤー ===

    def _add_layer(self):
        if self.result_image is None:
            return
        name = Path(self.source_path).stem if self.source_path else f'layer{len(self.stack) + 1}'
        MattePipeline().place(self.stack, self.result_image.copy(), name,
                              layer_type=self.combo_type.currentData())
        self._refresh_layer_list()

    def _selected_layer(self) -> Optional[LayerRecord]:
        item = self.list_layers.currentItem()
        return item.data(Qt.ItemDataRole.UserRole) if item is not None else None

    def _move_layer(self, direction: str):
        obj = self._selected_layer()
        if obj is not None and self.stack.move_within_type(obj, direction):
            self._refresh_layer_list(obj)

    def _move_layer_to_edge(self, edge: str):
        obj = self._selected_layer()
        if obj is not None and self.stack.move_to_edge_within_type(obj, edge):
            self._refresh_layer_list(obj)

    def _refresh_layer_list(self, selected: Optional[LayerRecord] = None):
        self.list_layers.clear()
        # 手前を上に表示
        for obj in reversed(self.stack.objects()):
            item = QListWidgetItem(f'[{obj.kind.value}] {obj.name}  z={self.stack.z_index(obj)}')
            item.setData(Qt.ItemDataRole.UserRole, obj)
            self.list_layers.addItem(item)
            if obj is selected:
                self.list_layers.setCurrentItem(item)

    def _export_canvas(self):
        images = [o.image for o in self.stack if o.image is not None]
        if not images:
            QMessageBox.warning(self, '警告', 'レイヤーがありません')
            return
        width = max(o.x + o.image.width for o in self.stack if o.image is not None)
        height = max(o.y + o.image.height for o in self.stack if o.image is not None)
        path, _ = QFileDialog.getSaveFileName(self, '書き出し先を選択', 'canvas.png', 'PNG画像 (*.png)')
        if not path:
            return
        flat = self.compositor.flatten(self.stack, width, height)
        if save_image(path, flat):
            QMessageBox.information(self, '完了', f'書き出しました:\n{path}')
        else:
            QMessageBox.warning(self, 'エラー', '書き出しに失敗しました')

    # === 設定 ===

    def _load_settings(self):
        """保存済み設定を読み込む"""
        geometry = self.settings.value('window/geometry')
        if geometry is not None:
            self.restoreGeometry(geometry)

        self._last_input_dir = self.settings.value('paths/input_dir', '', type=str)
        self._last_output_dir = self.settings.value('paths/output_dir', '', type=str)

        self.check_keyer.setChecked(self.settings.value('keyer/enabled', False, type=bool))
        self.spin_tolerance.setValue(self.settings.value('keyer/tolerance', 40.0, type=float))
        self.spin_sample.setValue(self.settings.value('keyer/sample_size', 10, type=int))
        self.spin_chroma_tolerance.setValue(self.settings.value('keyer/chroma_tolerance', 30, type=int))
        self.spin_dilation.setValue(self.settings.value('mask/dilation', 0, type=int))
        self.spin_mask_feather.setValue(self.settings.value('mask/feather', 0, type=int))
        self.check_refine.setChecked(self.settings.value('refine/enabled', True, type=bool))
        self.spin_threshold.setValue(self.settings.value('refine/threshold', 30, type=int))
        self.spin_smooth.setValue(self.settings.value('refine/smooth_radius', 2, type=int))
        self.spin_color_tol.setValue(self.settings.value('refine/color_tolerance', 20, type=int))
        self.spin_feather.setValue(self.settings.value('refine/feather_width', 3, type=int))

    def _save_settings(self):
        """設定を保存"""
        self.settings.setValue('window/geometry', self.saveGeometry())
        self.settings.setValue('paths/input_dir', self._last_input_dir)
        self.settings.setValue('paths/output_dir', self._last_output_dir)

        self.settings.setValue('keyer/enabled', self.check_keyer.isChecked())
        self.settings.setValue('keyer/tolerance', self.spin_tolerance.value())
        self.settings.setValue('keyer/sample_size', self.spin_sample.value())
        self.settings.setValue('keyer/chroma_tolerance', self.spin_chroma_tolerance.value())
        self.settings.setValue('mask/dilation', self.spin_dilation.value())
        self.settings.setValue('mask/feather', self.spin_mask_feather.value())
        self.settings.setValue('refine/enabled', self.check_refine.isChecked())
        self.settings.setValue('refine/threshold', self.spin_threshold.value())
        self.settings.setValue('refine/smooth_radius', self.spin_smooth.value())
        self.settings.setValue('refine/color_tolerance', self.spin_color_tol.value())
        self.settings.setValue('refine/feather_width', self.spin_feather.value())

    def closeEvent(self, event):
        if self.worker is not None and self.worker.isRunning():
            self.worker.requestInterruption()
            self.worker.wait()
        self._save_settings()
        super().closeEvent(event)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    app = QApplication(sys.argv)
    app.setApplicationName('Matte Studio')
    app.setStyle('Fusion')

    app.setStyleSheet("""
        QMainWindow { background-color: #1e1e1e; }
        QWidget { background-color: #252526; color: #cccccc; }
        QPushButton { background-color: #0e639c; color: white; border: none; padding: 5px 15px; border-radius: 3px; }
        QPushButton:hover { background-color: #1177bb; }
        QPushButton:pressed { background-color: #094771; }
        QPushButton:disabled { background-color: #3c3c3c; color: #666; }
        QGroupBox { border: 1px solid #3e3e42; margin-top: 10px; padding-top: 10px; }
        QGroupBox::title { subcontrol-origin: margin; left: 10px; padding: 0 5px; }
        QLabel { color: #cccccc; }
        QScrollArea { background-color: #1e1e1e; border: none; }
        QSpinBox, QDoubleSpinBox { background-color: #3c3c3c; border: 1px solid #3e3e42; padding: 3px; }
        QComboBox { background-color: #3c3c3c; border: 1px solid #3e3e42; padding: 5px; min-width: 120px; }
        QListWidget { background-color: #1e1e1e; border: 1px solid #3e3e42; }
    """)

    window = MatteStudioWindow()
    window.show()
    sys.exit(app.exec())


if __name__ == '__main__':
    main()
