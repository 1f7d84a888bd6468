"""Audio output: narration playback sinks and text-to-speech."""

import asyncio
import signal
import subprocess
import time
from typing import Awaitable, Callable, Optional

from .config import CONFIG
from .errors import MediaError, PlaybackAborted
from .logger import Logger

EndedCallback = Callable[[], Awaitable[None]]
ErrorCallback = Callable[[str], Awaitable[None]]


class AudioSink:
    """Interface for something that can play one narration file at a time.

    `play()` raises MediaError on failure and PlaybackAborted when a
    pause/stop interrupted it. Natural end and late failures are reported
    through the callbacks set with `set_callbacks`.
    """

    def __init__(self):
        self.on_ended: Optional[EndedCallback] = None
        self.on_error: Optional[ErrorCallback] = None

    def set_callbacks(self, on_ended: Optional[EndedCallback], on_error: Optional[ErrorCallback]):
        self.on_ended = on_ended
        self.on_error = on_error

    async def unlock(self):
        raise NotImplementedError

    async def load(self, url: str):
        raise NotImplementedError

    async def play(self):
        raise NotImplementedError

    async def pause(self):
        raise NotImplementedError

    async def stop(self):
        raise NotImplementedError

    async def seek(self, seconds: float):
        raise NotImplementedError

    def set_volume(self, volume: float):
        raise NotImplementedError


class ProcessAudioSink(AudioSink):
    """Plays files through an external player process (mpv by default).

    The URL is resolved to a local file through `resolver` (normally the
    asset cache, which fetches on a miss). Pause/resume use SIGSTOP/SIGCONT;
    seek restarts the player at the new offset.
    """

    def __init__(self, command: Optional[list[str]] = None,
                 resolver: Optional[Callable[[str], Optional[str]]] = None,
                 logger: Optional[Logger] = None):
        super().__init__()
        self.command = command or CONFIG["audio_player_command"]
        self.resolver = resolver
        self.logger = logger or Logger()
        self.volume = CONFIG["default_volume"]
        self.source: Optional[str] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task] = None
        self._offset = 0.0
        self._started_at: Optional[float] = None
        self._paused = False
        self._stopping = False
        self._load_token = 0        # bumped by load/stop; a stale load discards its result

    async def unlock(self):
        # A local player process needs no user gesture
        return None

    async def load(self, url: str):
        await self.stop()
        self._load_token += 1
        token = self._load_token
        self.source = None
        path = url
        if self.resolver:
            loop = asyncio.get_running_loop()
            path = await loop.run_in_executor(None, self.resolver, url)
            if token != self._load_token:
                raise PlaybackAborted(f"load superseded: {url}")
            if not path:
                raise MediaError(f"Audio not available: {url}")
        self.source = path
        self._offset = 0.0

    async def play(self):
        if not self.source:
            raise MediaError("Nothing loaded")
        if self.process and self._paused:
            self._signal(signal.SIGCONT)
            self._paused = False
            self._started_at = time.monotonic()
            return
        if self.process:
            return
        await self._spawn()

    async def _spawn(self):
        args = list(self.command) + [f"--volume={int(self.volume * 100)}"]
        if self._offset > 0:
            args.append(f"--start={self._offset:.1f}")
        args.append(self.source)
        self._stopping = False
        try:
            self.process = await asyncio.create_subprocess_exec(
                *args, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except FileNotFoundError:
            raise MediaError(f"Audio player not found: {self.command[0]}")
        except OSError as e:
            raise MediaError(f"Audio player failed to start: {e}")
        self._started_at = time.monotonic()
        self._watcher = asyncio.ensure_future(self._watch(self.process))

    async def _watch(self, process: asyncio.subprocess.Process):
        _, stderr = await process.communicate()
        if process is not self.process:
            return
        self.process = None
        self._started_at = None
        if self._stopping:
            return
        if process.returncode == 0:
            if self.on_ended:
                await self.on_ended()
        elif self.on_error:
            message = (stderr or b"").decode(errors="replace").strip() or f"player exited {process.returncode}"
            await self.on_error(message)

    def _signal(self, sig):
        if self.process and self.process.returncode is None:
            try:
                self.process.send_signal(sig)
            except ProcessLookupError:
                pass

    def _elapsed(self) -> float:
        if self._started_at is None:
            return self._offset
        return self._offset + (time.monotonic() - self._started_at)

    async def pause(self):
        if not self.process or self._paused:
            return
        self._offset = self._elapsed()
        self._started_at = None
        self._signal(signal.SIGSTOP)
        self._paused = True

    async def stop(self):
        self._load_token += 1
        process = self.process
        if not process:
            return
        self._stopping = True
        if self._paused:
            self._signal(signal.SIGCONT)
            self._paused = False
        self._signal(signal.SIGTERM)
        self.process = None
        self._started_at = None
        if self._watcher:
            try:
                await asyncio.wait_for(asyncio.shield(self._watcher), timeout=2)
            except asyncio.TimeoutError:
                if process.returncode is None:
                    process.kill()
            self._watcher = None

    async def seek(self, seconds: float):
        was_running = self.process is not None and not self._paused
        await self.stop()
        self._offset = max(0.0, seconds)
        if was_running:
            await self._spawn()

    def set_volume(self, volume: float):
        # Applied on the next (re)start of the player
        self.volume = max(0.0, min(1.0, volume))


class FakeAudioSink(AudioSink):
    """In-memory sink for tests.

    `play_gate`, when set, keeps play() pending until the event is set, so
    tests can issue pause/stop while a play transition is in flight.
    """

    def __init__(self, failing_urls: tuple = (), fail_play: bool = False):
        super().__init__()
        self.failing_urls = set(failing_urls)
        self.fail_play = fail_play
        self.abort_play = False
        self.play_gate: Optional[asyncio.Event] = None
        self.calls: list[tuple] = []
        self.loaded_url: Optional[str] = None
        self.playing = False
        self.position = 0.0
        self.volume = 1.0
        self.unlock_count = 0

    async def unlock(self):
        self.unlock_count += 1
        self.calls.append(("unlock",))

    async def load(self, url: str):
        self.calls.append(("load", url))
        await asyncio.sleep(0)
        if url in self.failing_urls:
            raise MediaError(f"Failed to load audio: {url}")
        self.loaded_url = url
        self.position = 0.0

    async def play(self):
        self.calls.append(("play", self.loaded_url))
        if self.play_gate is not None:
            await self.play_gate.wait()
        if self.abort_play:
            raise PlaybackAborted("play() interrupted")
        if self.fail_play:
            raise MediaError("Playback failed")
        self.playing = True

    async def pause(self):
        self.calls.append(("pause",))
        self.playing = False

    async def stop(self):
        self.calls.append(("stop",))
        self.playing = False
        self.position = 0.0

    async def seek(self, seconds: float):
        self.calls.append(("seek", seconds))
        self.position = seconds

    def set_volume(self, volume: float):
        self.volume = volume

    async def finish(self):
        """Simulate the current file reaching its end"""
        self.playing = False
        if self.on_ended:
            await self.on_ended()

    async def fail(self, message: str = "decode error"):
        """Simulate a failure after playback started"""
        self.playing = False
        if self.on_error:
            await self.on_error(message)


class Speech:
    """Text-to-speech interface used for fallback narration"""

    callback: Optional[Callable[[str], None]] = None  # Class-level callback for the event feed

    @classmethod
    def set_callback(cls, callback: Optional[Callable[[str], None]]):
        """Set callback function for speech events"""
        cls.callback = callback

    async def speak(self, text: str, language: str):
        raise NotImplementedError

    def cancel(self):
        raise NotImplementedError


class EspeakSpeech(Speech):
    """Speak text using espeak, falling back to pyttsx3, then to printing"""

    def __init__(self, command: Optional[list[str]] = None, logger: Optional[Logger] = None):
        self.command = command or CONFIG["tts_command"]
        self.logger = logger or Logger()
        self.process: Optional[asyncio.subprocess.Process] = None
        self._cancelled = False

    async def speak(self, text: str, language: str):
        if Speech.callback:
            Speech.callback(text)

        self._cancelled = False
        voice = CONFIG["tts_languages"].get(language, language)
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command, "-v", voice, text,
                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            await self.process.wait()
        except FileNotFoundError:
            if not self._cancelled:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self._speak_pyttsx3, text)
        except OSError as e:
            self.logger.log("Speech error", {"error": str(e)})
            print(f"[AUDIO] {text}")
        finally:
            self.process = None

    def _speak_pyttsx3(self, text: str):
        try:
            import pyttsx3
            engine = pyttsx3.init()
            engine.say(text)
            engine.runAndWait()
        except Exception as e:
            self.logger.log("pyttsx3 unavailable", {"error": str(e)})
            print(f"[AUDIO] {text}")

    def cancel(self):
        self._cancelled = True
        if self.process and self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass


class FakeSpeech(Speech):
    """Records what would have been spoken"""

    def __init__(self, fail: bool = False):
        self.spoken: list[tuple[str, str]] = []
        self.cancelled = 0
        self.fail = fail

    async def speak(self, text: str, language: str):
        self.spoken.append((text, language))
        await asyncio.sleep(0)
        if self.fail:
            raise MediaError("speech synthesis failed")

    def cancel(self):
        self.cancelled += 1
