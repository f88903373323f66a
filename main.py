# main.py
# My Pills (KivyMD): medication list + add/edit form, encrypted local DB,
# light/dark theme toggle.
#
# Run on desktop:            python main.py
#
# Buildozer notes (in buildozer.spec):
#   requirements = python3,kivy,kivymd==1.2.0,pyjnius,cryptography
#   android.api = 34
#   android.minapi = 24
#
# The app core (store, controller, preferences) lives in the med_* modules
# and does not import Kivy; this file is only the UI.

from datetime import datetime
from typing import List, Optional

from kivy.lang import Builder
from kivy.clock import Clock
from kivy.core.window import Window
from kivy.utils import platform as _kivy_platform

from kivymd.app import MDApp
from kivymd.uix.boxlayout import MDBoxLayout
from kivymd.uix.button import MDFlatButton, MDIconButton
from kivymd.uix.dialog import MDDialog
from kivymd.uix.list import (
    IconLeftWidget,
    IRightBodyTouch,
    ThreeLineAvatarIconListItem,
    TwoLineAvatarIconListItem,
)
from kivymd.uix.pickers import MDDatePicker, MDTimePicker

from med_config import APP_TITLE, DESKTOP_WINDOW_SIZE, log_level, resolve_paths
from med_controller import AppController, Screen
from med_crypto import get_or_create_key
from med_log import clear_log, logger, recent_log, setup_logging
from med_prefs import PreferenceStore, ThemePreferences
from med_records import Frequency, MedicationRecord
from med_store import MedicationStore

if _kivy_platform != "android" and hasattr(Window, "size"):
    Window.size = DESKTOP_WINDOW_SIZE

FORM_FIELDS = {
    "name": "name_field",
    "start_date": "start_date_field",
    "time": "time_field",
    "end_date": "end_date_field",
    "description": "description_field",
}

# -------------------------
# Kivy KV (list + form screens)
# -------------------------
KV = """
<RowActions>:
    adaptive_width: True

MDBoxLayout:
    orientation: "vertical"

    MDTopAppBar:
        id: toolbar
        title: app.title
        elevation: 4
        left_action_items: [["text-box-outline", lambda x: app.show_log_dialog()]]
        right_action_items: [["weather-night", lambda x: app.toggle_theme()]]

    ScreenManager:
        id: screen_manager

        MDScreen:
            name: "listing"

            MDBoxLayout:
                orientation: "vertical"

                MDBoxLayout:
                    size_hint_y: None
                    height: "64dp"
                    padding: "20dp", "8dp"
                    md_bg_color: app.theme_cls.primary_color

                    MDLabel:
                        id: today_label
                        text: "—"
                        bold: True
                        theme_text_color: "Custom"
                        text_color: 1, 1, 1, 1

                    MDLabel:
                        id: weekday_label
                        text: ""
                        halign: "right"
                        theme_text_color: "Custom"
                        text_color: 1, 1, 1, 0.8

                MDLabel:
                    id: list_title
                    text: "Medications"
                    bold: True
                    size_hint_y: None
                    height: "40dp"
                    padding: "16dp", "0dp"

                MDLabel:
                    id: empty_label
                    text: "No pills scheduled"
                    halign: "center"
                    theme_text_color: "Secondary"
                    size_hint_y: None
                    height: "0dp"
                    opacity: 0

                ScrollView:
                    MDList:
                        id: medications_list

            MDFloatingActionButton:
                icon: "plus"
                pos_hint: {"right": 0.95, "y": 0.04}
                on_release: app.on_add()

        MDScreen:
            name: "editing"

            ScrollView:
                MDBoxLayout:
                    orientation: "vertical"
                    padding: "24dp"
                    spacing: "14dp"
                    adaptive_height: True

                    MDLabel:
                        id: form_title
                        text: "New medication"
                        font_style: "H6"
                        size_hint_y: None
                        height: "36dp"

                    MDTextField:
                        id: name_field
                        hint_text: "Medication *"
                        helper_text: "Required"
                        helper_text_mode: "on_error"
                        on_text: app.on_field("name", self.text)

                    MDBoxLayout:
                        adaptive_height: True
                        MDTextField:
                            id: start_date_field
                            hint_text: "Start date * (DD/MM/YYYY)"
                            helper_text: "Required"
                            helper_text_mode: "on_error"
                            on_text: app.on_field("start_date", self.text)
                        MDIconButton:
                            icon: "calendar"
                            on_release: app.show_date_picker("start_date")

                    MDBoxLayout:
                        adaptive_height: True
                        MDTextField:
                            id: time_field
                            hint_text: "Time * (HH:MM)"
                            helper_text: "Required"
                            helper_text_mode: "on_error"
                            on_text: app.on_field("time", self.text)
                        MDIconButton:
                            icon: "clock-outline"
                            on_release: app.show_time_picker()

                    MDLabel:
                        text: "Days *"
                        bold: True
                        size_hint_y: None
                        height: "28dp"

                    MDBoxLayout:
                        adaptive_height: True
                        spacing: "8dp"
                        MDCheckbox:
                            id: daily_box
                            group: "frequency"
                            allow_no_selection: False
                            size_hint: None, None
                            size: "40dp", "40dp"
                            on_active: app.on_frequency("daily", self.active)
                        MDLabel:
                            text: "Daily, ongoing"

                    MDBoxLayout:
                        adaptive_height: True
                        spacing: "8dp"
                        MDCheckbox:
                            id: limited_box
                            group: "frequency"
                            allow_no_selection: False
                            size_hint: None, None
                            size: "40dp", "40dp"
                            on_active: app.on_frequency("limited", self.active)
                        MDLabel:
                            text: "Limited or with pauses"

                    MDBoxLayout:
                        adaptive_height: True
                        MDTextField:
                            id: end_date_field
                            hint_text: "End date (DD/MM/YYYY)"
                            on_text: app.on_field("end_date", self.text)
                        MDIconButton:
                            icon: "calendar"
                            on_release: app.show_date_picker("end_date")

                    MDTextField:
                        id: description_field
                        hint_text: "Description (optional)"
                        multiline: True
                        max_height: "120dp"
                        on_text: app.on_field("description", self.text)

                    MDBoxLayout:
                        adaptive_height: True
                        spacing: "10dp"
                        MDFlatButton:
                            text: "Back"
                            on_release: app.on_cancel()
                        MDRaisedButton:
                            id: save_button
                            text: "Save"
                            disabled: True
                            on_release: app.on_submit()
"""


class RowActions(IRightBodyTouch, MDBoxLayout):
    """Edit / delete buttons on the right of a medication row."""


# -------------------------
# App
# -------------------------
class MyPillsApp(MDApp):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.paths = None
        self.store: Optional[MedicationStore] = None
        self.controller: Optional[AppController] = None
        self._rendered_records: Optional[List[MedicationRecord]] = None
        self._rendered_dark: Optional[bool] = None
        self._form_for = None
        self._filling = False
        self._log_dialog: Optional[MDDialog] = None
        self._render_trigger = Clock.create_trigger(lambda *_: self.render())

    def build(self):
        self.title = APP_TITLE
        self.theme_cls.theme_style = "Dark"
        self.theme_cls.primary_palette = "Purple"
        self.theme_cls.accent_palette = "Pink"
        return Builder.load_string(KV)

    def on_start(self):
        self.paths = resolve_paths()
        setup_logging(self.paths.log_path, log_level())
        logger.info(f"app start platform={_kivy_platform} base={self.paths.base_dir}")

        key = get_or_create_key(self.paths.key_path)
        self.store = MedicationStore(self.paths.db_path, key, tmp_dir=self.paths.tmp_dir)
        theme = ThemePreferences(PreferenceStore(self.paths.prefs_path))

        self.controller = AppController(self.store, theme)
        # coalesce bursts of changes into one render on the next frame
        self.controller.add_listener(lambda _: self._render_trigger())
        self.controller.start()

        self.refresh_header()
        Clock.schedule_interval(lambda *_: self.refresh_header(), 60)
        self.render()

    def on_stop(self):
        try:
            if self.controller:
                self.controller.close()
            if self.store:
                self.store.close()
        except Exception:
            logger.exception("shutdown failed")

    # -------------------------
    # Rendering
    # -------------------------
    def refresh_header(self):
        now = datetime.now()
        self.root.ids.today_label.text = now.strftime("%d %B")
        self.root.ids.weekday_label.text = now.strftime("%A")

    def render(self):
        c = self.controller
        if c is None:
            return
        try:
            if c.dark_mode is not self._rendered_dark:
                self.theme_cls.theme_style = "Dark" if c.dark_mode else "Light"
                icon = "weather-night" if c.dark_mode else "weather-sunny"
                self.root.ids.toolbar.right_action_items = [[icon, lambda x: self.toggle_theme()]]
                self._rendered_dark = c.dark_mode

            if c.records is not self._rendered_records:
                self.render_medications(c.records)
                self._rendered_records = c.records

            if c.screen is Screen.EDITING:
                if self._form_for is not c.draft:
                    self.fill_form()
                    self._form_for = c.draft
                self.root.ids.save_button.disabled = not c.can_submit
            else:
                self._form_for = None

            self.root.ids.screen_manager.current = c.screen.value
        except Exception:
            logger.exception("render failed")

    def render_medications(self, records: List[MedicationRecord]):
        ml = self.root.ids.medications_list
        ml.clear_widgets()

        empty = self.root.ids.empty_label
        empty.opacity = 0 if records else 1
        empty.height = "0dp" if records else "120dp"

        for r in records:
            if r.description:
                item = ThreeLineAvatarIconListItem(
                    text=r.name, secondary_text=r.summary(), tertiary_text=r.description
                )
            else:
                item = TwoLineAvatarIconListItem(text=r.name, secondary_text=r.summary())
            item.add_widget(IconLeftWidget(icon="pill"))

            actions = RowActions()
            actions.add_widget(MDIconButton(icon="pencil", on_release=lambda _, r=r: self.on_edit(r)))
            actions.add_widget(MDIconButton(icon="delete", on_release=lambda _, r=r: self.on_delete(r)))
            item.add_widget(actions)

            item.bind(on_release=lambda _, r=r: self.on_edit(r))
            ml.add_widget(item)

    def fill_form(self):
        c = self.controller
        draft = c.draft
        ids = self.root.ids
        self._filling = True
        try:
            ids.form_title.text = "New medication" if c.state.is_new else "Edit medication"
            for field_name, widget_id in FORM_FIELDS.items():
                widget = ids[widget_id]
                widget.text = getattr(draft, field_name)
                widget.error = False
            ids.daily_box.active = draft.frequency is Frequency.DAILY
            ids.limited_box.active = draft.frequency is Frequency.LIMITED
        finally:
            self._filling = False

    # -------------------------
    # User actions
    # -------------------------
    def toggle_theme(self):
        try:
            self.controller.toggle_theme()
        except Exception:
            logger.exception("theme toggle failed")

    def on_add(self):
        try:
            self.controller.request_add()
        except Exception:
            logger.exception("open add form failed")

    def on_edit(self, record: MedicationRecord):
        try:
            self.controller.request_edit(record)
        except Exception:
            logger.exception("open edit form failed")

    def on_delete(self, record: MedicationRecord):
        try:
            self.controller.request_delete(record)
        except Exception:
            logger.exception("delete medication failed")

    def on_field(self, field_name: str, value: str):
        if self._filling or self.controller is None or self.controller.screen is not Screen.EDITING:
            return
        try:
            self.controller.update_draft(**{field_name: value})
            if value.strip():
                self.root.ids[FORM_FIELDS[field_name]].error = False
        except Exception:
            logger.exception("draft update failed")

    def on_frequency(self, tag: str, active: bool):
        if not active:
            return
        self.on_field("frequency", tag)

    def on_submit(self):
        try:
            if not self.controller.submit():
                for field_name in self.controller.missing_fields:
                    self.root.ids[FORM_FIELDS[field_name]].error = True
        except Exception:
            logger.exception("save medication failed")

    def on_cancel(self):
        try:
            self.controller.cancel()
        except Exception:
            logger.exception("close form failed")

    # -------------------------
    # Pickers
    # -------------------------
    def show_time_picker(self):
        picker = MDTimePicker()

        def on_save(_, time_obj):
            self.root.ids.time_field.text = f"{time_obj.hour:02d}:{time_obj.minute:02d}"

        picker.bind(on_save=on_save)
        picker.open()

    def show_date_picker(self, field_name: str):
        picker = MDDatePicker()

        def on_save(_, value, __):
            self.root.ids[FORM_FIELDS[field_name]].text = value.strftime("%d/%m/%Y")

        picker.bind(on_save=on_save)
        picker.open()

    # -------------------------
    # Log viewer
    # -------------------------
    def show_log_dialog(self):
        def close(*_):
            self._log_dialog.dismiss()

        def clear(*_):
            clear_log(self.paths.log_path if self.paths else None)
            logger.info("log cleared")
            close()

        self._log_dialog = MDDialog(
            title="Recent log",
            text=recent_log()[-4000:] or "(empty)",
            buttons=[
                MDFlatButton(text="Clear", on_release=clear),
                MDFlatButton(text="Close", on_release=close),
            ],
        )
        self._log_dialog.open()


# -------------------------
# Entrypoint
# -------------------------
def main():
    MyPillsApp().run()


if __name__ == "__main__":
    main()
