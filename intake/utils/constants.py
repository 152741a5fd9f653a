from __future__ import annotations

TICKET_STATUS_PENDING = "pending"
TICKET_STATUS_COMPLETED = "completed"

TICKET_STATUSES = (TICKET_STATUS_PENDING, TICKET_STATUS_COMPLETED)

PRIORITY_LEVELS = ("low", "medium", "high")

STEP_CATEGORY = "category"
STEP_PRIORITY = "priority"
STEP_LOCATION_BUILDING = "location_building"
STEP_LOCATION_FLOOR = "location_floor"
STEP_LOCATION_ROOM = "location_room"
STEP_COMPLETE = "complete"

LOCATION_STEPS = (STEP_LOCATION_BUILDING, STEP_LOCATION_FLOOR, STEP_LOCATION_ROOM)

# Where "back" leads from each step. Steps missing here have nowhere to go.
BACK_TARGETS = {
    STEP_PRIORITY: STEP_CATEGORY,
    STEP_LOCATION_BUILDING: STEP_PRIORITY,
    STEP_LOCATION_FLOOR: STEP_LOCATION_BUILDING,
    STEP_LOCATION_ROOM: STEP_LOCATION_FLOOR,
}

FIELD_CATEGORY = "category"
FIELD_PRIORITY = "priority"
FIELD_LOCATION = "location"
FIELD_BUILDING = "building"
FIELD_FLOOR = "floor"
FIELD_ROOM = "room"

SETTABLE_FIELDS = (FIELD_CATEGORY, FIELD_PRIORITY, FIELD_BUILDING, FIELD_FLOOR, FIELD_ROOM)
FREE_TEXT_FIELDS = (FIELD_CATEGORY, FIELD_LOCATION)
GOTO_FIELDS = (FIELD_CATEGORY, FIELD_PRIORITY, FIELD_LOCATION)

FIELD_ENTRY_STEPS = {
    FIELD_CATEGORY: STEP_CATEGORY,
    FIELD_PRIORITY: STEP_PRIORITY,
    FIELD_LOCATION: STEP_LOCATION_BUILDING,
}

EVENT_NEW_WIZARD = "new_wizard"
EVENT_SET_FIELD = "set_field"
EVENT_FREE_TEXT = "free_text"
EVENT_NAVIGATE = "navigate"
EVENT_ATTACH_MEDIA = "attach_media"

EVENT_KINDS = (
    EVENT_NEW_WIZARD,
    EVENT_SET_FIELD,
    EVENT_FREE_TEXT,
    EVENT_NAVIGATE,
    EVENT_ATTACH_MEDIA,
)

NAV_BACK = "back"
NAV_GOTO = "goto"
NAV_MANUAL = "manual"
NAV_SUBMIT = "submit"

NAV_COMMANDS = (NAV_BACK, NAV_GOTO, NAV_MANUAL, NAV_SUBMIT)

TICKET_EVENT_TYPES = {
    "create",
    "complete",
    "reopen",
    "update",
}

TICKET_ID_PREFIX = "TCK-"
TICKET_ID_WIDTH = 3
