"""Narration playback state machine.

IDLE -> LOADING -> PLAYING <-> PAUSED -> IDLE when a file ends (the queue is
drained one item at a time). A failed load or play goes to ERROR, reads the
item's title and description through speech synthesis once, then returns to
IDLE and moves on to the next queued item.
"""

import asyncio
from collections import deque
from typing import Callable, Optional

from .audio import AudioSink, Speech
from .config import CONFIG
from .errors import MediaError, PlaybackAborted
from .logger import Logger
from .models import AudioQueueItem, PlaybackState


class PlaybackController:
    """Turns enqueued narration items into audio on a sink.

    Observers are plain callables:
      on_state_change(state, item), on_error(message, item),
      on_ended(item), on_tts_fallback(item)
    """

    def __init__(self, sink: AudioSink, speech: Speech, autoplay: Optional[bool] = None,
                 volume: Optional[float] = None, language: Optional[str] = None,
                 logger: Optional[Logger] = None,
                 on_state_change: Optional[Callable] = None,
                 on_error: Optional[Callable] = None,
                 on_ended: Optional[Callable] = None,
                 on_tts_fallback: Optional[Callable] = None):
        self.sink = sink
        self.speech = speech
        self.autoplay = CONFIG["autoplay"] if autoplay is None else autoplay
        self.volume = CONFIG["default_volume"] if volume is None else volume
        self.language = language or CONFIG["default_language"]
        self.logger = logger or Logger()
        self.on_state_change = on_state_change
        self.on_error = on_error
        self.on_ended = on_ended
        self.on_tts_fallback = on_tts_fallback

        self.state = PlaybackState.IDLE
        self.current_item: Optional[AudioQueueItem] = None
        self.fallback_item: Optional[AudioQueueItem] = None  # being read by speech
        self.queue: deque[AudioQueueItem] = deque()
        self.unlocked = False

        self._generation = 0        # bumped by stop/skip to void pending effects
        self._loaded_generation = -1
        self._want_playing = False
        self._pending_play: Optional[asyncio.Future] = None
        self._fallback_spoken: Optional[AudioQueueItem] = None  # spoken during this attempt

        self.sink.set_callbacks(self.handle_ended, self._on_media_error)
        self.sink.set_volume(self.volume)

    # State

    def _set_state(self, state: PlaybackState):
        if state == self.state:
            return
        self.state = state
        item = self.current_item or self.fallback_item
        self.logger.log("Playback state", {
            "state": state.value,
            "poi": item.poi.id if item else None,
            "queued": len(self.queue),
        })
        if self.on_state_change:
            self.on_state_change(state, item)

    @property
    def queue_length(self) -> int:
        return len(self.queue)

    def is_playing(self) -> bool:
        return self.state == PlaybackState.PLAYING

    # Operations

    async def unlock(self):
        """One-time audio unlock, normally from an explicit user action"""
        if self.unlocked:
            return
        await self.sink.unlock()
        self.unlocked = True
        self.logger.log("Audio unlocked")

    async def enqueue(self, item: AudioQueueItem):
        """Start item right away when idle with autoplay, else queue it"""
        if self.state == PlaybackState.IDLE and self.current_item is None and self.autoplay:
            await self._start(item)
        else:
            self.queue.append(item)
            self.logger.log("Queued narration", {"poi": item.poi.id, "queued": len(self.queue)})

    async def play(self):
        """Resume the current item; when idle, start the head of the queue"""
        if self.current_item is None:
            if self.state == PlaybackState.IDLE and self.queue:
                await self._play_next()
            return
        if self._pending_play is not None and not self._pending_play.done():
            return
        self._want_playing = True
        if self.state == PlaybackState.PAUSED:
            if self._loaded_generation == self._generation:
                await self._play_current(self._generation)
            else:
                # Load still in flight; it continues into play
                self._set_state(PlaybackState.LOADING)

    async def pause(self):
        if self.current_item is None:
            return
        self._want_playing = False
        await self._settle_pending()
        if self.current_item is None or self._want_playing:
            return
        if self.state in (PlaybackState.LOADING, PlaybackState.PLAYING):
            await self.sink.pause()
            self._set_state(PlaybackState.PAUSED)

    async def stop(self):
        """Stop the current item without advancing the queue"""
        await self._halt()
        self._set_state(PlaybackState.IDLE)

    async def skip(self):
        """Drop the current item and start the next queued one, if any"""
        skipped = self.current_item or self.fallback_item
        await self._halt()
        if skipped:
            self.logger.log("Skipped narration", {"poi": skipped.poi.id})
        if self.queue:
            await self._start(self.queue.popleft())
        else:
            self._set_state(PlaybackState.IDLE)

    async def seek(self, seconds: float):
        if self.current_item is None:
            return
        await self._settle_pending()
        if self.current_item is not None:
            await self.sink.seek(seconds)

    def set_volume(self, volume: float):
        if self.current_item is None:
            return
        self.volume = max(0.0, min(1.0, volume))
        self.sink.set_volume(self.volume)

    def clear_queue(self):
        self.queue.clear()

    async def handle_ended(self):
        """Sink callback: the current file played to its end"""
        item = self.current_item
        if item is None:
            return
        self.current_item = None
        self._want_playing = False
        self._set_state(PlaybackState.IDLE)
        self.logger.log("Narration finished", {"poi": item.poi.id})
        if self.on_ended:
            self.on_ended(item)
        await self._play_next()

    # Internals

    async def _play_next(self):
        if self.queue and self.state == PlaybackState.IDLE and self.current_item is None:
            await self._start(self.queue.popleft())

    async def _start(self, item: AudioQueueItem):
        self._generation += 1
        generation = self._generation
        self.current_item = item
        self._fallback_spoken = None
        self._want_playing = True
        self._set_state(PlaybackState.LOADING)
        self.logger.log("Loading narration", {"poi": item.poi.id, "url": item.audio_url})

        try:
            await self.sink.load(item.audio_url)
        except PlaybackAborted:
            # A newer load or a stop took over the sink
            return
        except MediaError as e:
            if generation == self._generation:
                await self._handle_media_error(str(e), item)
            return
        if generation != self._generation:
            return
        self._loaded_generation = generation

        if not self._want_playing:
            self._set_state(PlaybackState.PAUSED)
            return
        await self._play_current(generation)

    async def _play_current(self, generation: int):
        if not self.unlocked:
            await self.unlock()
        pending = asyncio.ensure_future(self.sink.play())
        self._pending_play = pending
        try:
            await pending
        except PlaybackAborted:
            # Interrupted by a pause/stop that waits on this transition
            if generation == self._generation and self._want_playing:
                self._set_state(PlaybackState.PAUSED)
            return
        except MediaError as e:
            if generation == self._generation and self.current_item is not None:
                await self._handle_media_error(str(e), self.current_item)
            return
        finally:
            if self._pending_play is pending:
                self._pending_play = None

        if generation != self._generation or not self._want_playing:
            return
        self._set_state(PlaybackState.PLAYING)

    async def _settle_pending(self):
        """Wait for an in-flight play to resolve or reject"""
        pending = self._pending_play
        if pending is not None and not pending.done():
            await asyncio.wait({pending})

    async def _halt(self):
        self._generation += 1
        self._want_playing = False
        await self._settle_pending()
        if self.fallback_item is not None:
            self.speech.cancel()
        await self.sink.stop()
        self.current_item = None
        self.fallback_item = None

    async def _on_media_error(self, message: str):
        if self.current_item is not None:
            await self._handle_media_error(message, self.current_item)

    async def _handle_media_error(self, message: str, item: AudioQueueItem):
        self.logger.log("Playback error", {"poi": item.poi.id, "url": item.audio_url, "error": message})
        if self.on_error:
            self.on_error(message, item)

        generation = self._generation
        self.current_item = None
        self._want_playing = False
        self.fallback_item = item
        self._set_state(PlaybackState.ERROR)

        if self._fallback_spoken is not item:
            self._fallback_spoken = item
            if self.on_tts_fallback:
                self.on_tts_fallback(item)
            text = ". ".join(part for part in (item.title, item.description) if part)
            try:
                await self.speech.speak(text, item.language)
            except MediaError as e:
                self.logger.log("Speech fallback failed", {"poi": item.poi.id, "error": str(e)})

        if generation != self._generation:
            return
        self.fallback_item = None
        self._set_state(PlaybackState.IDLE)
        await self._play_next()
