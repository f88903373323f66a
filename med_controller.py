# med_controller.py
# Navigation state and user-intent routing between the UI and the stores.
#
#   LISTING --add-----------> EDITING(editing=None)
#   LISTING --edit(R)-------> EDITING(editing=R)
#   EDITING --submit(valid)-> LISTING   (insert if editing is None, else update)
#   EDITING --cancel--------> LISTING   (draft discarded)
#   LISTING --delete(R)-----> LISTING   (immediate, no confirmation)

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from med_config import DEFAULT_DARK_MODE
from med_errors import InvalidTransition, ValidationRejected
from med_log import logger
from med_prefs import ThemePreferences
from med_records import MedicationDraft, MedicationRecord
from med_store import MedicationStore, Subscription


class Screen(str, Enum):
    LISTING = "listing"
    EDITING = "editing"


@dataclass
class NavigationState:
    """Per-session UI state. The UI reads it; only the controller writes it."""
    screen: Screen = Screen.LISTING
    editing: Optional[MedicationRecord] = None
    draft: Optional[MedicationDraft] = None

    @property
    def is_new(self) -> bool:
        return self.screen is Screen.EDITING and self.editing is None


Listener = Callable[["AppController"], None]


class AppController:
    def __init__(self, store: MedicationStore, theme: ThemePreferences):
        self.store = store
        self.theme = theme
        self.state = NavigationState()
        self.records: List[MedicationRecord] = []
        self._dark_mode = DEFAULT_DARK_MODE
        self._listeners: List[Listener] = []
        self._subscription: Optional[Subscription] = None
        self._unsubscribe_theme: Optional[Callable[[], None]] = None

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self) -> "AppController":
        if self._subscription is None:
            self._subscription = self.store.subscribe_all(self._on_records)
        if self._unsubscribe_theme is None:
            self._unsubscribe_theme = self.theme.subscribe(self._on_dark_mode)
        return self

    def close(self):
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._unsubscribe_theme is not None:
            self._unsubscribe_theme()
            self._unsubscribe_theme = None
        self._listeners.clear()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("controller listener failed")

    def _on_records(self, records: List[MedicationRecord]):
        self.records = records
        self._notify()

    def _on_dark_mode(self, enabled: bool):
        self._dark_mode = enabled
        self._notify()

    # -------------------------
    # Read side
    # -------------------------
    @property
    def screen(self) -> Screen:
        return self.state.screen

    @property
    def editing(self) -> Optional[MedicationRecord]:
        return self.state.editing

    @property
    def draft(self) -> Optional[MedicationDraft]:
        return self.state.draft

    @property
    def missing_fields(self) -> List[str]:
        if self.state.draft is None:
            return []
        return self.state.draft.missing_fields()

    @property
    def can_submit(self) -> bool:
        return self.state.draft is not None and self.state.draft.is_valid()

    # -------------------------
    # Transitions
    # -------------------------
    def _require(self, screen: Screen, action: str):
        if self.state.screen is not screen:
            raise InvalidTransition(action, self.state.screen.value)

    def _to_listing(self):
        self.state.screen = Screen.LISTING
        self.state.editing = None
        self.state.draft = None
        self._notify()

    def request_add(self):
        self._require(Screen.LISTING, "add")
        self.state.screen = Screen.EDITING
        self.state.editing = None
        self.state.draft = MedicationDraft()
        logger.debug("form opened: new medication")
        self._notify()

    def request_edit(self, record: MedicationRecord):
        self._require(Screen.LISTING, "edit")
        if not record.is_persisted:
            raise ValueError("only stored medications can be edited")
        self.state.screen = Screen.EDITING
        self.state.editing = record
        self.state.draft = MedicationDraft.from_record(record)
        logger.debug(f"form opened: medication id={record.id}")
        self._notify()

    def update_draft(self, **values):
        self._require(Screen.EDITING, "change the draft")
        self.state.draft.update(**values)
        self._notify()

    def submit(self) -> bool:
        """Save the draft and return to the list.

        Returns False (nothing saved, still editing) if required fields are
        empty. Store errors propagate and leave the form open.
        """
        self._require(Screen.EDITING, "submit")
        editing = self.state.editing
        try:
            record = self.state.draft.to_record(editing.id if editing else 0)
        except ValidationRejected as exc:
            logger.info(f"save blocked: {exc}")
            return False

        if editing is None:
            self.store.insert(record)
        else:
            self.store.update(record)
        self._to_listing()
        return True

    def cancel(self):
        self._require(Screen.EDITING, "cancel")
        self._to_listing()

    def request_delete(self, record: MedicationRecord):
        self._require(Screen.LISTING, "delete")
        self.store.delete(record.id)

    # -------------------------
    # Theme
    # -------------------------
    @property
    def dark_mode(self) -> bool:
        return self._dark_mode

    def set_dark_mode(self, enabled: bool):
        self.theme.set_dark_mode(enabled)
        if self._unsubscribe_theme is None:
            # not started: no subscription will echo the change back
            self._dark_mode = bool(enabled)

    def toggle_theme(self) -> bool:
        enabled = not self._dark_mode
        self.set_dark_mode(enabled)
        return enabled
