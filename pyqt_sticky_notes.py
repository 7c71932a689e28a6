import logging
import os
import sys
from pathlib import Path

# PyQt6 imports
from PyQt6.QtWidgets import (QApplication, QWidget, QVBoxLayout, QHBoxLayout, QFrame,
                             QPushButton, QPlainTextEdit, QSizeGrip, QMessageBox, QMenu,
                             QMenuBar, QSystemTrayIcon)
from PyQt6.QtGui import QIcon, QAction, QKeySequence, QGuiApplication
from PyQt6.QtCore import Qt, QObject, QPoint, pyqtSignal

# PIL for icon handling
from PIL import Image, ImageDraw

# Global hotkey support
from pynput import keyboard

from cloud_store import CloudKitRecordStore, LocalRecordStore
from debouncer import EditDebouncer
from notes_manager import NotesManager
from qt_runtime import QtScheduler, QtTaskRunner
from settings import WindowPositions, default_data_dir, load_settings, setup_logging

LOGGER = logging.getLogger(__name__)

APP_NAME = "Sticky Notes"
NOTE_COLOR = "#FFFF99"
NOTE_SIZE = (250, 250)


def resource_path(relative_path):
    """ Get absolute path to resource, works for dev and for PyInstaller """
    base_path = getattr(sys, "_MEIPASS", os.path.abspath("."))
    return os.path.join(base_path, relative_path)


class HotkeySignaler(QObject):
    """Helper class to emit Qt signals from the hotkey thread"""
    create_note_signal = pyqtSignal(str)


class DragStrip(QFrame):
    """The grab area that stands in for the hidden title bar."""

    def mousePressEvent(self, event):
        if event.button() == Qt.MouseButton.LeftButton:
            handle = self.window().windowHandle()
            if handle is not None:
                handle.startSystemMove()
            event.accept()
            return
        super().mousePressEvent(event)


class NoteWindow(QWidget):
    """
    A borderless floating window for one sticky note.

    Every keystroke replaces ``self.note`` with an edited copy and pokes the
    debouncer; the debouncer hands the latest copy to ``manager.update_note``
    once typing pauses. Closing flushes, then tells the manager.
    """
    def __init__(self, note, manager, app_instance):
        super().__init__()
        self.note = note
        self.note_id = note.note_id
        self.manager = manager
        self.app = app_instance
        self._dismissed = False
        self.debouncer = EditDebouncer(
            QtScheduler(self),
            lambda: self.note,
            self.manager.update_note,
            interval=self.app.settings.debounce_interval,
        )
        self.init_ui()

    def init_ui(self):
        # --- Window Setup ---
        self.setWindowFlags(Qt.WindowType.Window
                            | Qt.WindowType.FramelessWindowHint
                            | Qt.WindowType.WindowStaysOnTopHint)
        self.setAttribute(Qt.WidgetAttribute.WA_DeleteOnClose)
        self.setWindowTitle(APP_NAME)
        self.setWindowIcon(self.app.app_icon)
        self.setMinimumSize(120, 80)

        # Restore position and size
        pos = self.app.positions.get(self.note_id)
        if pos:
            self.setGeometry(pos['x'], pos['y'], pos['width'], pos['height'])
        else:
            self.resize(*NOTE_SIZE)
            self.cascade_on_screen()

        # --- Layouts ---
        self.main_layout = QVBoxLayout()
        self.main_layout.setContentsMargins(5, 0, 5, 0)
        self.main_layout.setSpacing(0)
        self.setLayout(self.main_layout)

        # --- Widgets ---
        # Top strip: drag handle plus buttons
        self.drag_strip = DragStrip()
        self.drag_strip.setFixedHeight(20)
        strip_layout = QHBoxLayout(self.drag_strip)
        strip_layout.setContentsMargins(0, 0, 0, 0)

        self.close_button = QPushButton("×")
        self.close_button.setToolTip("Close")
        self.delete_button = QPushButton("🗑")
        self.delete_button.setToolTip("Delete Note")

        strip_layout.addWidget(self.close_button)
        strip_layout.addStretch()
        strip_layout.addWidget(self.delete_button)
        self.main_layout.addWidget(self.drag_strip)

        # Text Editor
        self.text_edit = QPlainTextEdit()
        self.text_edit.setPlainText(self.note.content)
        self.main_layout.addWidget(self.text_edit)

        # Bottom-right grip, the window has no frame to resize from
        grip_layout = QHBoxLayout()
        grip_layout.setContentsMargins(0, 0, 0, 0)
        grip_layout.addStretch()
        grip_layout.addWidget(QSizeGrip(self))
        self.main_layout.addLayout(grip_layout)

        # --- Initial State & Connections ---
        self.apply_styles()
        self.text_edit.textChanged.connect(self.on_text_changed)
        self.close_button.clicked.connect(self.close)
        self.delete_button.clicked.connect(self.delete_note)

        # --- Shortcuts ---
        # New/Delete/Quit work from any note window
        self.addActions(self.app.global_actions)

    def apply_styles(self):
        color = NOTE_COLOR

        # Convert hex to rgb for hover effects
        r, g, b = tuple(int(color.lstrip('#')[i:i+2], 16) for i in (0, 2, 4))
        # Create a slightly darker shade for hover
        hover_color = f"#{max(0, r - 20):02x}{max(0, g - 20):02x}{max(0, b - 20):02x}"

        style = f"""
            NoteWindow, QWidget {{ background-color: {color}; }}
            QPlainTextEdit {{ background-color: {color}; border: none; font-size: 13px; }}
            DragStrip {{ background-color: {hover_color}; }}

            /* Blended button style - no borders, transparent background */
            QPushButton {{
                background-color: transparent;
                border: none;
                border-radius: 3px;
                padding: 0px 6px;
                color: #555;
                font-size: 11px;
            }}
            QPushButton:hover {{
                background-color: {color};
            }}
            QPushButton:pressed {{
                background-color: rgba(0, 0, 0, 0.1);
            }}
        """
        self.setStyleSheet(style)

    def cascade_on_screen(self):
        screen_geo = QGuiApplication.primaryScreen().availableGeometry()
        offset = 30 * (len(self.manager.open_note_ids) % 10)
        self.move(screen_geo.center() - self.rect().center() + QPoint(offset, offset))

    def on_text_changed(self):
        text = self.text_edit.toPlainText()
        if text == self.note.content:
            return
        self.note = self.note.edited(text)
        self.debouncer.on_edit()

    def delete_note(self):
        self.app.delete_note(self.note_id)

    def geometry_dict(self):
        return {"x": self.x(), "y": self.y(), "width": self.width(), "height": self.height()}

    # --- Manager-facing handle ---

    def raise_note(self):
        self.show()
        self.raise_()
        self.activateWindow()

    def dismiss(self):
        """Close without flushing and without calling back into the manager."""
        self._dismissed = True
        self.app.positions.forget(self.note_id)
        self.close()

    def closeEvent(self, event):
        # If the whole app is quitting, shutdown() has already flushed every note.
        if self._dismissed or self.app.is_quitting:
            super().closeEvent(event)
            return

        self.app.positions.save({self.note_id: self.geometry_dict()})
        self.debouncer.flush()
        self.manager.close_window(self.note_id)
        super().closeEvent(event)


class StickyNotesApp:
    def __init__(self, data_dir=None):
        # --- File and Path Setup ---
        self.data_dir = Path(data_dir) if data_dir else default_data_dir()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.settings = load_settings(self.data_dir)
        setup_logging(self.settings, self.data_dir)
        self.positions = WindowPositions(self.data_dir / "positions.json")
        self.is_quitting = False
        self._shut_down = False
        self._alerts = []

        # --- Qt App Initialization ---
        self.app = QApplication(sys.argv)
        self.app.setApplicationName(APP_NAME)
        # Closing the last note must not end the app; there is a tray icon and menu bar.
        self.app.setQuitOnLastWindowClosed(False)
        self.app_icon = self.create_icon()
        self.app.setWindowIcon(self.app_icon)

        # --- Notes ---
        self.runner = QtTaskRunner(self.app)
        self.manager = NotesManager(
            store=self.create_store(),
            runner=self.runner,
            window_factory=self.create_window,
            report_error=self.show_error,
        )

        # --- Global Hotkey Setup ---
        self.hotkey_signaler = HotkeySignaler()
        self.hotkey_signaler.create_note_signal.connect(self.create_note_with_content)
        self.start_hotkey_listener()

        self.init_actions()
        self.init_menu_bar()
        self.init_tray_icon()
        self.app.aboutToQuit.connect(self.shutdown)

    def create_store(self):
        if self.settings.effective_backend == "cloudkit":
            LOGGER.info("Using CloudKit container %s (%s)",
                        self.settings.container, self.settings.environment)
            return CloudKitRecordStore(
                container=self.settings.container,
                api_token=self.settings.api_token,
                web_auth_token=self.settings.web_auth_token,
                environment=self.settings.environment,
                zone_name=self.settings.zone_name,
                base_url=self.settings.base_url,
                timeout=self.settings.request_timeout,
            )
        LOGGER.info("Using local note store in %s", self.data_dir)
        return LocalRecordStore(self.data_dir / "notes.json")

    def create_window(self, note, manager):
        return NoteWindow(note, manager, self)

    def start_hotkey_listener(self):
        """Start the global hotkey listener in a background thread"""
        def on_activate():
            # Emit signal to create note (thread-safe); the clipboard is read on the UI thread
            self.hotkey_signaler.create_note_signal.emit("")

        hotkey = keyboard.HotKey(
            keyboard.HotKey.parse('<ctrl>+<alt>+n'),
            on_activate
        )

        def for_canonical(f):
            return lambda k: f(listener.canonical(k))

        listener = keyboard.Listener(
            on_press=for_canonical(hotkey.press),
            on_release=for_canonical(hotkey.release)
        )
        listener.daemon = True
        listener.start()
        self.hotkey_listener = listener

    def create_note_with_content(self, content):
        """Create a note from the clipboard text (quick note hotkey)"""
        if not content:
            content = QApplication.clipboard().text() or ""
        note = self.manager.create_note(content.strip())
        window = self.manager.window(note.note_id)
        if window is not None:
            window.raise_note()
            window.text_edit.setFocus()
            # Move cursor to end
            cursor = window.text_edit.textCursor()
            cursor.movePosition(cursor.MoveOperation.End)
            window.text_edit.setTextCursor(cursor)

    def run(self):
        self.manager.launch()
        return self.app.exec()

    def create_icon(self):
        icon_path = Path(resource_path("icon.png"))
        if not icon_path.exists():
            icon_path = self.data_dir / "icon.png"
        if not icon_path.exists():
            img = Image.new('RGB', (64, 64), color=NOTE_COLOR)
            d = ImageDraw.Draw(img)
            d.text((10, 10), "SN", fill='black')
            img.save(icon_path)
        return QIcon(str(icon_path))

    def init_actions(self):
        self.new_note_action = QAction("New Note", self.app)
        self.new_note_action.setShortcut(QKeySequence.StandardKey.New)
        self.new_note_action.triggered.connect(self.create_new_note)

        self.delete_note_action = QAction("Delete Note", self.app)
        self.delete_note_action.setShortcut("Ctrl+Backspace")
        self.delete_note_action.triggered.connect(self.delete_focused_note)

        self.quit_action = QAction("Quit", self.app)
        self.quit_action.setShortcut(QKeySequence.StandardKey.Quit)
        self.quit_action.setMenuRole(QAction.MenuRole.QuitRole)
        self.quit_action.triggered.connect(self.quit_app)

        self.global_actions = [self.new_note_action, self.delete_note_action, self.quit_action]
        for action in self.global_actions:
            action.setShortcutContext(Qt.ShortcutContext.ApplicationShortcut)

    def init_menu_bar(self):
        # A parentless menu bar is the global macOS menu bar
        self.menu_bar = QMenuBar(None)
        note_menu = self.menu_bar.addMenu("Note")
        note_menu.addAction(self.new_note_action)
        note_menu.addAction(self.delete_note_action)
        note_menu.addSeparator()
        note_menu.addAction(self.quit_action)

    def init_tray_icon(self):
        self.tray_icon = QSystemTrayIcon(self.app_icon, self.app)
        self.tray_icon.setToolTip(APP_NAME)

        menu = QMenu()
        menu.addAction(self.new_note_action)
        menu.addSeparator()
        menu.addAction(self.quit_action)
        self.tray_menu = menu
        self.tray_icon.setContextMenu(menu)
        if QSystemTrayIcon.isSystemTrayAvailable():
            self.tray_icon.show()

    def create_new_note(self):
        note = self.manager.create_note()
        window = self.manager.window(note.note_id)
        if window is not None:
            window.raise_note()
            window.text_edit.setFocus()

    def delete_focused_note(self):
        window = QApplication.activeWindow()
        if not isinstance(window, NoteWindow):
            QApplication.beep()
            return
        self.delete_note(window.note_id)

    def delete_note(self, note_id):
        window = self.manager.window(note_id)
        if self.confirm_delete(window, "Delete this note? This cannot be undone."):
            self.manager.delete_note(note_id)

    def confirm_delete(self, parent, message):
        reply = QMessageBox.question(parent, "Confirm Delete", message,
                                     QMessageBox.StandardButton.Yes | QMessageBox.StandardButton.No,
                                     QMessageBox.StandardButton.No)
        return reply == QMessageBox.StandardButton.Yes

    def show_error(self, title, message):
        """Alert for a failed store call; a sheet on the focused note where there is one."""
        if self.is_quitting:
            return
        parent = QApplication.activeWindow()
        box = QMessageBox(QMessageBox.Icon.Warning, title, message,
                          QMessageBox.StandardButton.Ok, parent)
        if parent is not None:
            box.setWindowModality(Qt.WindowModality.WindowModal)
        box.setAttribute(Qt.WidgetAttribute.WA_DeleteOnClose)
        self._alerts.append(box)
        box.finished.connect(lambda _result, b=box: self._alerts.remove(b))
        box.open()

    def quit_app(self):
        """Exits the application; shutdown() runs from aboutToQuit."""
        QApplication.instance().quit()

    def shutdown(self):
        """Flush every note and give the resulting saves time to reach the store."""
        if self._shut_down:
            return
        self._shut_down = True
        self.is_quitting = True

        geometries = {}
        for note_id in self.manager.open_note_ids:
            window = self.manager.window(note_id)
            if window.isVisible():
                geometries[note_id] = window.geometry_dict()
        self.positions.save(geometries)
        self.manager.flush_all()
        self.runner.wait(self.settings.quit_timeout)
        # Deliver the completions so failures are logged
        self.app.processEvents()
        self.runner.close()
        if getattr(self, "hotkey_listener", None) is not None:
            self.hotkey_listener.stop()


def main():
    app = StickyNotesApp()
    sys.exit(app.run())


if __name__ == "__main__":
    main()
