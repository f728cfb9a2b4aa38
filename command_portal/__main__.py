"""
Entry point: python3 -m command_portal
"""

# =============================================================================
# EVENTLET MUST BE FIRST - Before any other imports!
# =============================================================================
# Eventlet monkey_patch() must happen before importing anything else
# to avoid "monkey_patching after imports" errors
try:
    import eventlet
    eventlet.monkey_patch()
    ASYNC_MODE = 'eventlet'
except ImportError:
    ASYNC_MODE = 'threading'


def run():
    from command_portal.server import main
    main(async_mode=ASYNC_MODE)


if __name__ == '__main__':
    run()
