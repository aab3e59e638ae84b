"""Background worker that runs an eye screening off the UI thread."""

from PyQt6.QtCore import QThread, pyqtSignal

from core.errors import InputError
from core.eye_analyzer import EyeAnalyzer
from core.utils import ImageRef


class AnalysisWorker(QThread):
    """Runs EyeAnalyzer.analyze for a single image."""

    progress = pyqtSignal(int, int, str)  # step, total, message
    result_ready = pyqtSignal(object)      # PredictionResult
    error = pyqtSignal(str)                # error message

    def __init__(self, analyzer: EyeAnalyzer, image: ImageRef, parent=None):
        super().__init__(parent)
        self._analyzer = analyzer
        self._image = image
        self._cancelled = False

    def run(self):
        try:
            result = self._analyzer.analyze(self._image, on_progress=self._on_progress)
        except InputError as e:
            if not self._cancelled:
                self.error.emit(f"Analysis failed: {e}")
            return
        if not self._cancelled:
            self.result_ready.emit(result)

    def cancel(self):
        """Request cancellation; no further signals are emitted."""
        self._cancelled = True

    def _on_progress(self, step: int, total: int, message: str):
        if not self._cancelled:
            self.progress.emit(step, total, message)
