# Message type constants (stringly-typed protocol; canonical list lives here)

# client -> server
T_CANVAS_UPDATE = "CANVAS_UPDATE"
T_DRAW_ACTION = "DRAW_ACTION"
T_AI_PROMPT = "AI_PROMPT"
T_CONTINUE_DRAWING = "CONTINUE_DRAWING"
T_TOGGLE_STREAMING_MODE = "TOGGLE_STREAMING_MODE"

# server -> clients (canvas operations; CANVAS_UPDATE and DRAW_ACTION are relayed as-is)
T_CLEAR_CANVAS = "CLEAR_CANVAS"
T_CHANGE_TOOL = "CHANGE_TOOL"
T_CHANGE_COLOR = "CHANGE_COLOR"
T_CHANGE_LINE_WIDTH = "CHANGE_LINE_WIDTH"
T_PAUSE = "PAUSE"

# server -> clients (orchestration)
T_TRIGGER_CONTINUE = "TRIGGER_CONTINUE"
T_PHASE_CHANGE = "PHASE_CHANGE"
T_COMPLETION_UPDATE = "COMPLETION_UPDATE"
T_DRAWING_COMPLETE = "DRAWING_COMPLETE"
T_DRAWING_FAILED = "DRAWING_FAILED"
T_ERROR = "ERROR"

# server -> clients (streaming)
T_STREAMING_MODE_UPDATE = "STREAMING_MODE_UPDATE"
T_STREAMING_MODE_STARTED = "STREAMING_MODE_STARTED"
T_STREAMING_COMPLETE = "STREAMING_COMPLETE"
T_REQUEST_CANVAS_UPDATE = "REQUEST_CANVAS_UPDATE"
T_STREAMING_COMMAND_START = "STREAMING_COMMAND_START"
T_STREAMING_COMMAND_COMPLETE = "STREAMING_COMMAND_COMPLETE"

# Canvas geometry (pixels)
CANVAS_WIDTH = 800
CANVAS_HEIGHT = 600

TOOLS = ("pencil", "brush", "rectangle", "circle", "fill", "spray", "eraser")
DEFAULT_TOOL = "pencil"
DEFAULT_COLOR = "#000000"
DEFAULT_LINE_WIDTH = 2
MIN_LINE_WIDTH = 1
MAX_LINE_WIDTH = 50

# Phases: 1 structure, 2 coloring, 3 details
FIRST_PHASE = 1
LAST_PHASE = 3

# Streaming knobs accepted from clients
MIN_STREAMING_INTERVAL_MS = 100
MAX_STREAMING_INTERVAL_MS = 2000
MIN_STREAMING_BATCH_SIZE = 1
MAX_STREAMING_BATCH_SIZE = 5
