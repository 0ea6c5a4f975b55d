# ledger_app.py
# Desktop front-end for the Beancount export.
# - Paste addresses (optionally "0x...:Nickname"), enter an Etherscan API key, Fetch
# - Progress bar + status while addresses are fetched one by one in a worker thread
# - Failed addresses are listed and can be retried individually
# - The ledger is regenerated after every fetch/retry; copy or save it
# - Address text and API key persist in settings.json next to the program

import os
import sys
import json
import logging
import traceback
from typing import Any, Dict, Optional

from PyQt5.QtCore import Qt, QThread, QObject, pyqtSignal, pyqtSlot
from PyQt5.QtGui import QFont
from PyQt5.QtWidgets import (
    QApplication, QMainWindow, QWidget, QVBoxLayout, QHBoxLayout,
    QLabel, QPushButton, QLineEdit, QPlainTextEdit, QListWidget, QListWidgetItem,
    QProgressBar, QFileDialog, QDialog, QSplitter
)
from web3 import Web3

from address_book import parse_addresses
from fetch_orchestrator import FetchOrchestrator, FetchProgress, FetchResult, FailureRecord
from explorer_client import EtherscanClient
from ledger_generator import generate_ledger

SETTINGS_FILE = "settings.json"


###############################################################################
# Logging & Files
###############################################################################

def get_data_path(filename):
    """Get the correct path for data files, works for both dev and packaged exe"""
    if getattr(sys, 'frozen', False):
        base_path = os.path.dirname(sys.executable)
    else:
        base_path = os.path.dirname(os.path.abspath(__file__))
    return os.path.join(base_path, filename)


def setup_logging():
    logging.basicConfig(
        filename=get_data_path('app.log'),
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    logging.info("Application started")


def load_settings() -> Dict[str, str]:
    defaults = {"addresses": "", "api_key": ""}
    try:
        with open(get_data_path(SETTINGS_FILE), "r") as f:
            data = json.load(f)
        if isinstance(data, dict):
            defaults.update({k: str(data.get(k) or "") for k in defaults})
    except FileNotFoundError:
        pass
    except (OSError, ValueError) as e:
        logging.error(f"Error loading settings: {e}")
    return defaults


def save_settings(settings: Dict[str, str]) -> None:
    try:
        with open(get_data_path(SETTINGS_FILE), "w") as f:
            json.dump(settings, f, indent=4)
    except OSError as e:
        logging.error(f"Failed to save settings: {e}")


###############################################################################
# Copyable error dialog
###############################################################################

class CopyableTextDialog(QDialog):
    def __init__(self, title: str, text: str, parent=None):
        super().__init__(parent)
        self.setWindowTitle(title)
        self.resize(720, 360)
        v = QVBoxLayout(self)
        self.text = QPlainTextEdit(self)
        self.text.setPlainText(text)
        v.addWidget(self.text)
        h = QHBoxLayout()
        copy_btn = QPushButton("Copy All")
        copy_btn.clicked.connect(lambda: QApplication.clipboard().setText(self.text.toPlainText()))
        close_btn = QPushButton("Close")
        close_btn.clicked.connect(self.close)
        h.addWidget(copy_btn)
        h.addStretch()
        h.addWidget(close_btn)
        v.addLayout(h)


###############################################################################
# Background workers (keep the GUI responsive)
###############################################################################

class FetchWorker(QObject):
    progress = pyqtSignal(object)   # FetchProgress
    finished = pyqtSignal(object)   # FetchResult
    error = pyqtSignal(str)

    def __init__(self, orchestrator: FetchOrchestrator, addresses, api_key: str):
        super().__init__()
        self.orchestrator = orchestrator
        self.addresses = list(addresses)
        self.api_key = api_key

    @pyqtSlot()
    def run(self):
        try:
            result = self.orchestrator.fetch_all(self.addresses, self.api_key, on_progress=self.progress.emit)
            self.finished.emit(result)
        except Exception as e:
            self.error.emit(f"{e}\n\nTraceback:\n{traceback.format_exc()}")


class RetryWorker(QObject):
    finished = pyqtSignal(object)   # AddressDataset | FailureRecord
    error = pyqtSignal(str)

    def __init__(self, orchestrator: FetchOrchestrator, address: str, api_key: str):
        super().__init__()
        self.orchestrator = orchestrator
        self.address = address
        self.api_key = api_key

    @pyqtSlot()
    def run(self):
        try:
            self.finished.emit(self.orchestrator.retry(self.address, self.api_key))
        except Exception as e:
            self.error.emit(f"{e}\n\nTraceback:\n{traceback.format_exc()}")


###############################################################################
# Main Window
###############################################################################

class LedgerWindow(QMainWindow):
    def __init__(self, orchestrator: Optional[FetchOrchestrator] = None):
        super().__init__()
        self.setWindowTitle("Ethereum → Beancount")
        self.setGeometry(120, 120, 1280, 820)

        self.orchestrator = orchestrator or FetchOrchestrator(EtherscanClient())
        self.settings = load_settings()
        self._thread: Optional[QThread] = None
        self._worker: Optional[QObject] = None

        main = QWidget()
        self.setCentralWidget(main)
        v = QVBoxLayout(main)

        # --- Inputs ---
        v.addWidget(QLabel("Addresses (one per line, optional :Nickname):"))
        self.addr_edit = QPlainTextEdit()
        self.addr_edit.setPlaceholderText("0x1234...abcd:Main wallet\n0x9876...dcba")
        self.addr_edit.setPlainText(self.settings["addresses"])
        self.addr_edit.setFixedHeight(120)
        v.addWidget(self.addr_edit)

        ctrl = QHBoxLayout()
        ctrl.addWidget(QLabel("Etherscan API Key:"))
        self.key_edit = QLineEdit()
        self.key_edit.setEchoMode(QLineEdit.Password)
        self.key_edit.setPlaceholderText("Optional (env ETHERSCAN_API_KEY or keys.json also works)")
        self.key_edit.setText(self.settings["api_key"])
        ctrl.addWidget(self.key_edit)

        self.fetch_btn = QPushButton("Fetch")
        self.fetch_btn.clicked.connect(self._start_fetch)
        ctrl.addWidget(self.fetch_btn)

        self.cancel_btn = QPushButton("Cancel")
        self.cancel_btn.setEnabled(False)
        self.cancel_btn.clicked.connect(self.orchestrator.cancel)
        ctrl.addWidget(self.cancel_btn)
        v.addLayout(ctrl)

        # --- Progress ---
        self.progress_bar = QProgressBar()
        self.progress_bar.setValue(0)
        v.addWidget(self.progress_bar)
        self.status_lbl = QLabel("")
        v.addWidget(self.status_lbl)
        self.stats_lbl = QLabel("")
        self.stats_lbl.setStyleSheet("font-weight: bold;")
        v.addWidget(self.stats_lbl)

        # --- Failures + output ---
        splitter = QSplitter(Qt.Vertical)

        failed_box = QWidget()
        fv = QVBoxLayout(failed_box)
        fv.setContentsMargins(0, 0, 0, 0)
        fv.addWidget(QLabel("Failed addresses:"))
        self.failed_list = QListWidget()
        fv.addWidget(self.failed_list)
        self.retry_btn = QPushButton("Retry selected")
        self.retry_btn.setEnabled(False)
        self.retry_btn.clicked.connect(self._retry_selected)
        self.failed_list.itemSelectionChanged.connect(self._update_buttons)
        fv.addWidget(self.retry_btn)
        splitter.addWidget(failed_box)

        out_box = QWidget()
        ov = QVBoxLayout(out_box)
        ov.setContentsMargins(0, 0, 0, 0)
        self.output = QPlainTextEdit()
        self.output.setReadOnly(True)
        self.output.setFont(QFont("Monospace"))
        ov.addWidget(self.output)
        oh = QHBoxLayout()
        self.copy_btn = QPushButton("Copy")
        self.copy_btn.clicked.connect(self._copy_output)
        self.save_btn = QPushButton("Save…")
        self.save_btn.clicked.connect(self._save_output)
        oh.addStretch()
        oh.addWidget(self.copy_btn)
        oh.addWidget(self.save_btn)
        ov.addLayout(oh)
        splitter.addWidget(out_box)
        splitter.setSizes([160, 520])
        v.addWidget(splitter)

        self._update_buttons()

    # --- Workers ---

    def _busy(self) -> bool:
        return self._thread is not None

    def _run_worker(self, worker: QObject, on_finished, on_progress=None):
        self._thread = QThread()
        self._worker = worker
        worker.moveToThread(self._thread)

        self._thread.started.connect(worker.run)
        if on_progress is not None:
            worker.progress.connect(on_progress)
        worker.finished.connect(on_finished)
        worker.error.connect(self._on_worker_error)

        worker.finished.connect(self._thread.quit)
        worker.error.connect(self._thread.quit)
        worker.finished.connect(worker.deleteLater)
        worker.error.connect(worker.deleteLater)
        self._thread.finished.connect(self._thread.deleteLater)
        self._thread.finished.connect(self._worker_done)

        self._update_buttons()
        self._thread.start()

    @pyqtSlot()
    def _worker_done(self):
        self._thread = None
        self._worker = None
        self._update_buttons()

    @pyqtSlot(str)
    def _on_worker_error(self, msg: str):
        logging.error(f"Background task failed: {msg}")
        self.status_lbl.setText("Failed.")
        dlg = CopyableTextDialog("Error", msg, self)
        dlg.exec_()

    # --- UI handlers ---

    def _persist_inputs(self):
        self.settings = {"addresses": self.addr_edit.toPlainText(), "api_key": self.key_edit.text().strip()}
        save_settings(self.settings)

    def _start_fetch(self):
        if self._busy():
            return
        addresses = parse_addresses(self.addr_edit.toPlainText())
        if not addresses:
            CopyableTextDialog("No addresses", "No valid Ethereum addresses were entered.", self).exec_()
            return
        self._persist_inputs()

        self.progress_bar.setRange(0, len(addresses))
        self.progress_bar.setValue(0)
        self.status_lbl.setText(f"Fetching {len(addresses)} addresses…")
        self.failed_list.clear()
        self.output.clear()

        worker = FetchWorker(self.orchestrator, addresses, self.settings["api_key"])
        self._run_worker(worker, self._on_fetch_finished, on_progress=self._on_fetch_progress)

    @pyqtSlot(object)
    def _on_fetch_progress(self, p: FetchProgress):
        self.progress_bar.setValue(p.index - 1)
        self.status_lbl.setText(f"Fetching {p.index}/{p.total}: {p.label}")

    @pyqtSlot(object)
    def _on_fetch_finished(self, result: FetchResult):
        self.progress_bar.setValue(self.progress_bar.maximum())
        self.status_lbl.setText(
            f"Done: {len(result.datasets)} fetched, {len(result.failures)} failed"
        )
        self._refresh()

    def _retry_selected(self):
        item = self.failed_list.currentItem()
        if item is None or self._busy():
            return
        address = item.data(Qt.UserRole)
        self.status_lbl.setText(f"Retrying {address}…")
        worker = RetryWorker(self.orchestrator, address, self.key_edit.text().strip())
        self._run_worker(worker, self._on_retry_finished)

    @pyqtSlot(object)
    def _on_retry_finished(self, outcome: Any):
        if isinstance(outcome, FailureRecord):
            self.status_lbl.setText(f"Retry failed for {outcome.label}: {outcome.error}")
        else:
            self.status_lbl.setText(f"Retry succeeded for {outcome.label}")
        self._refresh()

    def _refresh(self):
        snap = self.orchestrator.snapshot()

        self.failed_list.clear()
        for f in snap.failures:
            shown = Web3.to_checksum_address(f.address)
            text = f"{f.nickname} ({shown}): {f.error}" if f.nickname else f"{shown}: {f.error}"
            item = QListWidgetItem(text)
            item.setData(Qt.UserRole, f.address)
            self.failed_list.addItem(item)

        stats = self.orchestrator.stats()
        self.stats_lbl.setText(
            f"Addresses: {stats.total_addresses} | ETH txs: {stats.native_transfers} | "
            f"Token txs: {stats.token_transfers} | Failed: {stats.failed_addresses}"
        )
        self.output.setPlainText(generate_ledger(snap.datasets) if snap.datasets else "")
        self._update_buttons()

    def _update_buttons(self):
        busy = self._busy()
        self.fetch_btn.setEnabled(not busy)
        self.cancel_btn.setEnabled(busy)
        self.retry_btn.setEnabled(not busy and self.failed_list.currentItem() is not None)
        has_output = bool(self.output.toPlainText())
        self.copy_btn.setEnabled(has_output)
        self.save_btn.setEnabled(has_output)

    def _copy_output(self):
        QApplication.clipboard().setText(self.output.toPlainText())
        self.status_lbl.setText("Ledger copied to clipboard")

    def _save_output(self):
        path, _ = QFileDialog.getSaveFileName(self, "Save ledger", "ethereum.beancount",
                                              "Beancount (*.beancount);;All files (*)")
        if not path:
            return
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(self.output.toPlainText())
            self.status_lbl.setText(f"Saved to {path}")
        except OSError as e:
            CopyableTextDialog("Save failed", str(e), self).exec_()

    def closeEvent(self, event):
        self._persist_inputs()
        if self._thread is not None:
            self.orchestrator.cancel()
            self._thread.quit()
            self._thread.wait(5000)
        super().closeEvent(event)


if __name__ == "__main__":
    setup_logging()
    app = QApplication(sys.argv)
    win = LedgerWindow()
    win.show()
    sys.exit(app.exec_())
