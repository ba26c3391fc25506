"""UI components - Kivy widgets showing the composite raster and batch status."""

from collections import deque

from kivy.core.window import Window
from kivy.graphics import Color, Line, Rectangle, RoundedRectangle
from kivy.graphics.texture import Texture
from kivy.uix.boxlayout import BoxLayout
from kivy.uix.button import Button
from kivy.uix.image import Image
from kivy.uix.label import Label
from kivy.uix.screenmanager import Screen
from kivy.uix.scrollview import ScrollView
from kivy.uix.spinner import Spinner

from config import (
    DEFAULT_ROW_DUPLICATION,
    DEFAULT_TRANSFORM,
    MAX_ROW_DUPLICATION,
    TRANSFORMS,
)


class MainScreen(Screen):
    """Main screen with raster view, normalization controls, status and event log."""

    def __init__(self, on_run=None, on_params_changed=None, **kwargs):
        super().__init__(**kwargs)

        self.on_run_callback = on_run
        self.on_params_changed_callback = on_params_changed

        self.theme = {
            "window_bg": (0.94, 0.96, 0.98, 1.0),
            "card_bg": (0.99, 0.995, 1.0, 1.0),
            "card_border": (0.82, 0.86, 0.90, 1.0),
            "text_primary": (0.10, 0.16, 0.23, 1.0),
            "text_secondary": (0.33, 0.40, 0.48, 1.0),
            "run_btn": (0.12, 0.53, 0.80, 1.0),
            "status_idle_bg": (0.72, 0.76, 0.80, 1.0),
            "status_idle_border": (0.56, 0.60, 0.65, 1.0),
            "status_busy_bg": (0.30, 0.62, 0.44, 1.0),
            "status_busy_border": (0.23, 0.50, 0.34, 1.0),
            "status_warn_bg": (0.84, 0.34, 0.28, 1.0),
            "status_warn_border": (0.65, 0.24, 0.20, 1.0),
            "raster_bg": (0.20, 0.22, 0.25, 1.0),
        }
        Window.clearcolor = self.theme["window_bg"]

        self._texture = None
        self._texture_size = None
        # Set while the selectors are changed from code, not by the user
        self._suppress_param_events = False

        self._log_lines = deque(maxlen=1000)

        self._build_ui()

    # -------------------------------------------------------------------------
    # Styling Helpers
    # -------------------------------------------------------------------------

    def _bind_label_text_size(self, label: Label):
        label.bind(size=lambda i, v: setattr(i, "text_size", v))

    def _decorate_root(self, widget: BoxLayout):
        with widget.canvas.before:
            self._root_bg_color = Color(*self.theme["window_bg"])
            self._root_bg_rect = Rectangle(pos=widget.pos, size=widget.size)
        widget.bind(pos=self._update_root_rect, size=self._update_root_rect)

    def _update_root_rect(self, widget, _value):
        self._root_bg_rect.pos = widget.pos
        self._root_bg_rect.size = widget.size

    def _decorate_card(self, widget, bg_rgba=None, border_rgba=None, radius=12):
        if bg_rgba is None:
            bg_rgba = self.theme["card_bg"]
        if border_rgba is None:
            border_rgba = self.theme["card_border"]

        with widget.canvas.before:
            bg_color = Color(*bg_rgba)
            bg_rect = RoundedRectangle(
                pos=widget.pos,
                size=widget.size,
                radius=[radius, radius, radius, radius],
            )
            border_color = Color(*border_rgba)
            border_line = Line(
                rounded_rectangle=(widget.x, widget.y, widget.width, widget.height, radius),
                width=1.2,
            )

        widget._card_bg_rect = bg_rect
        widget._card_border_line = border_line
        widget._card_radius = radius
        widget.bind(pos=self._update_card_rect, size=self._update_card_rect)
        return bg_color, border_color

    def _update_card_rect(self, widget, _value):
        if not hasattr(widget, "_card_bg_rect"):
            return
        widget._card_bg_rect.pos = widget.pos
        widget._card_bg_rect.size = widget.size
        widget._card_border_line.rounded_rectangle = (
            widget.x,
            widget.y,
            widget.width,
            widget.height,
            widget._card_radius,
        )

    def _set_status_panel_style(self, bg_rgba, border_rgba):
        self._status_bg_color.rgba = bg_rgba
        self._status_border_color.rgba = border_rgba

    # -------------------------------------------------------------------------
    # Layout Builders
    # -------------------------------------------------------------------------

    def _build_ui(self):
        root = BoxLayout(orientation="vertical", padding=12, spacing=10)
        self._decorate_root(root)

        root.add_widget(self._build_top_bar())
        root.add_widget(self._build_status_panel())
        root.add_widget(self._build_raster_panel())
        root.add_widget(self._build_bottom_panel())

        self.add_widget(root)
        self.update_readouts([])

    def _build_top_bar(self):
        top_card = BoxLayout(size_hint=(1, 0.12), spacing=14, padding=(12, 10))
        self._decorate_card(top_card)

        title_box = BoxLayout(orientation="vertical", size_hint=(0.34, 1), spacing=2)
        title = Label(
            text="Detector Batch Viewer",
            halign="left",
            valign="middle",
            bold=True,
            color=self.theme["text_primary"],
            font_size="20sp",
        )
        subtitle = Label(
            text="Radial profile composite across frames",
            halign="left",
            valign="middle",
            color=self.theme["text_secondary"],
            font_size="12sp",
        )
        self._bind_label_text_size(title)
        self._bind_label_text_size(subtitle)
        title_box.add_widget(title)
        title_box.add_widget(subtitle)

        batch_box = BoxLayout(orientation="vertical", size_hint=(0.30, 1), spacing=2)
        self.batch_info_label = Label(
            text="BATCH: -- | --:--:--",
            halign="left",
            valign="middle",
            bold=True,
            color=self.theme["text_primary"],
            font_size="14sp",
        )
        self.progress_label = Label(
            text="Frames: 0 / 0 | Skipped: 0",
            halign="left",
            valign="middle",
            color=self.theme["text_secondary"],
            font_size="12sp",
        )
        self._bind_label_text_size(self.batch_info_label)
        self._bind_label_text_size(self.progress_label)
        batch_box.add_widget(self.batch_info_label)
        batch_box.add_widget(self.progress_label)

        controls = BoxLayout(size_hint=(0.36, 1), spacing=8)
        self.transform_spinner = Spinner(text=DEFAULT_TRANSFORM, values=TRANSFORMS, size_hint=(0.4, 1))
        self.row_dup_spinner = Spinner(
            text=str(DEFAULT_ROW_DUPLICATION),
            values=[str(n) for n in range(1, MAX_ROW_DUPLICATION + 1)],
            size_hint=(0.25, 1),
        )
        self.transform_spinner.bind(text=self._on_params_selected)
        self.row_dup_spinner.bind(text=self._on_params_selected)

        self.run_btn = Button(text="Re-run", size_hint=(0.35, 1))
        self.run_btn.background_normal = ""
        self.run_btn.background_down = ""
        self.run_btn.background_color = self.theme["run_btn"]
        self.run_btn.color = (1, 1, 1, 1)
        self.run_btn.bold = True
        self.run_btn.bind(on_press=self._on_run_pressed)

        controls.add_widget(self.transform_spinner)
        controls.add_widget(self.row_dup_spinner)
        controls.add_widget(self.run_btn)

        top_card.add_widget(title_box)
        top_card.add_widget(batch_box)
        top_card.add_widget(controls)
        return top_card

    def _build_status_panel(self):
        status_card = BoxLayout(orientation="vertical", size_hint=(1, 0.10), spacing=2, padding=(12, 8))
        self._status_bg_color, self._status_border_color = self._decorate_card(
            status_card,
            bg_rgba=self.theme["status_idle_bg"],
            border_rgba=self.theme["status_idle_border"],
            radius=10,
        )

        self.status_label = Label(
            text="Status: Idle",
            halign="left",
            valign="middle",
            color=(1, 1, 1, 1),
            bold=True,
            font_size="17sp",
        )
        self.status_detail_label = Label(
            text="No frames loaded",
            halign="left",
            valign="middle",
            color=(0.95, 0.97, 1.0, 1.0),
            font_size="12sp",
        )
        self._bind_label_text_size(self.status_label)
        self._bind_label_text_size(self.status_detail_label)

        status_card.add_widget(self.status_label)
        status_card.add_widget(self.status_detail_label)
        return status_card

    def _build_raster_panel(self):
        raster_card = BoxLayout(size_hint=(1, 0.50), padding=(10, 10))
        self._decorate_card(raster_card, bg_rgba=self.theme["raster_bg"])
        self.raster_image = Image(fit_mode="fill")
        raster_card.add_widget(self.raster_image)
        return raster_card

    def _build_text_card(self, title: str, width_hint: float, color, font_size: str, markup: bool):
        """Titled card holding a scrollable label; returns (card, scroll, label)."""
        card = BoxLayout(orientation="vertical", size_hint=(width_hint, 1), spacing=6, padding=(10, 8))
        self._decorate_card(card)

        header = Label(
            text=title,
            size_hint=(1, 0.16),
            halign="left",
            valign="middle",
            bold=True,
            color=self.theme["text_primary"],
            font_size="15sp",
        )
        self._bind_label_text_size(header)

        scroll = ScrollView(size_hint=(1, 0.84))
        label = Label(text="", size_hint_y=None, halign="left", valign="top",
                      markup=markup, color=color, font_size=font_size)
        # Grow with the text and wrap to the scroll view width
        label.bind(texture_size=lambda inst, size: self._fit_text_label(inst, size, scroll))
        scroll.add_widget(label)

        card.add_widget(header)
        card.add_widget(scroll)
        return card, scroll, label

    def _fit_text_label(self, label, texture_size, scroll):
        label.height = texture_size[1]
        label.text_size = (scroll.width - 10, None)

    def _build_bottom_panel(self):
        panel = BoxLayout(size_hint=(1, 0.28), spacing=10)

        readouts, self._readouts_scroll, self.readouts_label = self._build_text_card(
            "Batch Readout", 0.40, self.theme["text_primary"], "13sp", markup=True
        )
        events, self._log_scroll, self.log_label = self._build_text_card(
            "Event Log", 0.60, self.theme["text_secondary"], "12sp", markup=False
        )

        panel.add_widget(readouts)
        panel.add_widget(events)
        return panel

    # -------------------------------------------------------------------------
    # Raster View
    # -------------------------------------------------------------------------

    def show_raster(self, raster):
        """Upload an RGBA raster (rows top to bottom) to the image texture."""
        if raster is None:
            self.raster_image.texture = None
            self._texture = None
            self._texture_size = None
            return

        size = (raster.width, raster.height)
        if self._texture is None or self._texture_size != size:
            self._texture = Texture.create(size=size, colorfmt="rgba")
            self._texture.mag_filter = "nearest"
            self._texture.min_filter = "nearest"
            # Kivy textures start at the bottom row
            self._texture.flip_vertical()
            self._texture_size = size

        self._texture.blit_buffer(raster.tobytes(), colorfmt="rgba", bufferfmt="ubyte")
        self.raster_image.texture = self._texture
        self.raster_image.canvas.ask_update()

    # -------------------------------------------------------------------------
    # Readouts, Status and Batch Info
    # -------------------------------------------------------------------------

    def update_readouts(self, lines):
        if not lines:
            self.readouts_label.text = "[color=566576]Waiting for frames...[/color]"
            return
        self.readouts_label.text = "\n".join(lines)

    def set_status(self, level: str, title: str, detail: str):
        """level is one of 'idle', 'busy', 'warn'."""
        self.status_label.text = f"Status: {title}"
        self.status_detail_label.text = detail
        self._set_status_panel_style(
            self.theme[f"status_{level}_bg"],
            self.theme[f"status_{level}_border"],
        )

    def update_batch_info(self, batch_id, elapsed_str: str, settled: int, frame_count: int, failed: int):
        if batch_id:
            self.batch_info_label.text = f"BATCH: {batch_id} | {elapsed_str}"
        else:
            self.batch_info_label.text = "BATCH: -- | --:--:--"
        self.progress_label.text = f"Frames: {settled} / {frame_count} | Skipped: {failed}"

    def set_params(self, transform: str, row_duplication: int):
        """Move the selectors without notifying the params callback."""
        self._suppress_param_events = True
        try:
            self.transform_spinner.text = transform
            self.row_dup_spinner.text = str(row_duplication)
        finally:
            self._suppress_param_events = False

    # -------------------------------------------------------------------------
    # Control Handlers
    # -------------------------------------------------------------------------

    def _on_params_selected(self, _instance, _value):
        if self._suppress_param_events:
            return
        if self.on_params_changed_callback:
            self.on_params_changed_callback(self.transform_spinner.text, int(self.row_dup_spinner.text))

    def _on_run_pressed(self, _instance):
        if self.on_run_callback:
            self.on_run_callback()

    # -------------------------------------------------------------------------
    # Event Log
    # -------------------------------------------------------------------------

    def append_log(self, text: str):
        """Append text to event log and auto-scroll to bottom."""
        self._log_lines.extend(text.splitlines(keepends=True))
        self.log_label.text = "".join(self._log_lines)
        self._log_scroll.scroll_y = 0

    def clear_log(self):
        """Clear the event log."""
        self._log_lines.clear()
        self.log_label.text = ""
