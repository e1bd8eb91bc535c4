DEFAULT_TEST_TITLE = "Lactate Threshold Test"
DEFAULT_SPORT = "running"
DEFAULT_LOCAL_USER = "local"
DEFAULT_GUEST_NAME = "Guest"

GUEST_ID_COOKIE = "guest_user_id"
GUEST_NAME_COOKIE = "guest_user_name"
GUEST_EMAIL_DOMAIN = "guest.local"

ADD_MORE_STAGES_MESSAGE = "Add more stages for better threshold estimates."
