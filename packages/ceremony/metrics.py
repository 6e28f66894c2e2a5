from prometheus_client import Counter, Histogram, start_http_server

TRANSFER_ATTEMPTS = Counter(
    'ceremony_transfer_attempts_total', 'Signed-URL transfer attempts', ['direction', 'outcome']
)
SETUP_COMMAND_TIME = Histogram(
    'ceremony_setup_command_seconds', 'Time spent in setup binary commands', ['command']
)
VERIFY_OUTCOMES = Counter(
    'ceremony_verify_outcomes_total', 'Per-circuit verification outcomes', ['family', 'outcome']
)
KEYS_BUILT = Counter(
    'ceremony_keys_built_total', 'Finalize key-import results', ['outcome']
)

_started = False


def start_metrics_server(port: int | None) -> bool:
    """Expose metrics over HTTP once per process when a port is configured."""
    global _started
    if not port or _started:
        return False
    start_http_server(int(port))
    _started = True
    return True
