LINKED_AX_NODE_KEY = "linkedAXNode"
FOCUSED_KEY = "focused"
NON_AX_WITH_AX_CHILD_KEY = "nonAXWithAXChild"

# Main-tree node names that only host AX content and never carry a link themselves
TRANSPARENT_HOST_NAMES = {"ComponentHost"}

DEEP_EXPAND_LIMIT = 100

SELECT_DEBOUNCE_SECONDS = 0.1
HOVER_DEBOUNCE_SECONDS = 0.1
