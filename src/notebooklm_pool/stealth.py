"""Human-like pacing for typing, clicking and pointer movement.

Best effort only: these delays lower the chance of automated-traffic
checks firing. Nothing depends on them for correctness, and they can be
switched off with ``NOTEBOOKLM_STEALTH=false``.
"""

import asyncio
import random


async def random_delay(min_ms: int = 100, max_ms: int = 300) -> None:
    await asyncio.sleep(random.uniform(min_ms, max_ms) / 1000)


def _char_delay_seconds(wpm: int) -> float:
    # 5 characters per word, +/-40% jitter per keystroke
    base = 60.0 / (max(wpm, 1) * 5)
    return base * random.uniform(0.6, 1.4)


async def human_type(page, element, text: str, wpm: int = 160, enabled: bool = True) -> None:
    """Focus ``element`` and type ``text`` one keystroke at a time."""
    if not enabled:
        await element.fill(text)
        return

    await element.click()
    await random_delay(80, 200)
    for char in text:
        await page.keyboard.type(char)
        await asyncio.sleep(_char_delay_seconds(wpm))
        # Occasional longer pause, like a person rereading
        if char in " .,?" and random.random() < 0.05:
            await random_delay(150, 400)


async def realistic_click(page, element, enabled: bool = True) -> None:
    """Move the pointer onto the element before clicking it."""
    if not enabled:
        await element.click()
        return

    box = await element.bounding_box()
    if box:
        x = box["x"] + box["width"] * random.uniform(0.3, 0.7)
        y = box["y"] + box["height"] * random.uniform(0.3, 0.7)
        await page.mouse.move(x, y, steps=random.randint(5, 12))
        await random_delay(50, 150)
    await element.click()


async def random_mouse_movement(page, width: int = 1024, height: int = 768) -> None:
    await page.mouse.move(
        random.randint(0, width - 1),
        random.randint(0, height - 1),
        steps=random.randint(3, 8),
    )
