# stackpilot/utils/async_utils.py
import asyncio


def run_async(coro):
    """Helper function to run async operations in sync code"""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
