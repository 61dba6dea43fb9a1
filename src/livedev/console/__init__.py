"""Control-plane server and the state it mirrors to browser observers"""

from livedev.console.state import (
    StateStore,
    PatchError,
    diff,
    optimise,
    apply_patches,
    new_function_state,
)
from livedev.console.history import InvocationHistory
from livedev.console.server import ConsoleServer, origin_allowed
