"""Frame analysis poller: fixed-cadence, non-overlapping vision calls.

Each tick grabs the current camera frame, asks the backend for a coaching
suggestion and fans the result out to the context ledger, the diagnostic
log and (for confident, new suggestions) the TTS manager.

The next tick is scheduled `interval` seconds after the current one
settles, so a slow backend stretches the cadence instead of piling up
requests. A generation counter ties every scheduled tick to the start()
that created it; ticks from an earlier generation never reschedule.
"""

import asyncio
import logging

from context_ledger import ContextType

logger = logging.getLogger(__name__)

POLL_INTERVAL = 7.0
SPEAK_CONFIDENCE = 0.8
ANALYSIS_PREVIEW_CHARS = 120
VIBE_PREVIEW_CHARS = 24
CUE_PREVIEW_CHARS = 24
FALLBACK_VISUAL_CUE = "Connection unstable, retrying..."


class FramePoller:
    """Polls frames into the analysis endpoint.

    Args:
        session: shared SessionState (reads language and is_muted)
        frame_source: object with capture_frame() -> str | None
        client: object with async analyze(frame, target_vibe, topic, language_hint)
        ledger: ContextLedger for context entries and diagnostics
        tts: TTSPlaybackManager (or None to never speak)
        topic_provider: () -> str, current conversation topic
        target_vibe: the vibe the user is going for
        interval: seconds between a settled tick and the next one
        on_result: callback(SuggestionResult) after each successful analysis
    """

    def __init__(self, session, frame_source, client, ledger, tts=None,
                 topic_provider=None, target_vibe="", interval=POLL_INTERVAL,
                 on_result=None):
        self._session = session
        self._frame_source = frame_source
        self._client = client
        self._ledger = ledger
        self._tts = tts
        self._topic_provider = topic_provider or (lambda: "")
        self.target_vibe = target_vibe
        self.interval = interval
        self._on_result = on_result

        self.last_result = None
        self.visual_cue = ""
        self.last_spoken = ""
        self.in_flight = False

        self._running = False
        self._generation = 0
        self._timer = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self):
        return self._running

    def start(self):
        """Begin polling. The first tick fires immediately."""
        self.stop()
        self._running = True
        self._generation += 1
        self._schedule(self._generation, 0)
        logger.info("Frame poller started (every %.1fs)", self.interval)

    def stop(self):
        """Cancel the next tick. An in-flight call settles without rescheduling."""
        if self._running:
            logger.info("Frame poller stopped")
        self._running = False
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait_idle(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, generation, delay):
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._fire, generation)

    def _fire(self, generation):
        self._timer = None
        if generation != self._generation or not self._running:
            return
        self._spawn(self._run_tick(generation), name="frame-tick")

    async def _run_tick(self, generation):
        try:
            await self.tick()
        finally:
            if generation == self._generation and self._running:
                self._schedule(generation, self.interval)

    async def tick(self):
        """One analysis round. Returns the SuggestionResult, or None if skipped/failed."""
        try:
            frame = self._frame_source.capture_frame()
        except Exception as e:
            logger.warning("Frame capture failed: %s", e)
            frame = None
        if not frame:
            return None
        if self.in_flight:
            logger.debug("Analysis still in flight, skipping tick")
            return None

        self.in_flight = True
        language = self._session.language
        try:
            self._ledger.push_diagnostic(f"[SCAN] ANALYSING FRAME ({language.code.upper()})...")
            self._ledger.push_context(ContextType.ENVIRONMENT, "Frame scan", "Analysing visual feed...")

            result = await self._client.analyze(
                frame, self.target_vibe, self._topic_provider(), language.prompt_hint
            )
            self._apply_result(result)
            return result
        except Exception as e:
            logger.warning("Frame analysis failed: %s", e)
            self._ledger.push_diagnostic("[ERR] LINK UNSTABLE, RETRYING...")
            self.visual_cue = FALLBACK_VISUAL_CUE
            return None
        finally:
            self.in_flight = False

    def _apply_result(self, result):
        self.last_result = result
        self.visual_cue = result.visual_cue
        pct = result.confidence_pct

        if result.visual_cue:
            self._ledger.push_context(ContextType.VISUAL_CUE, "Visual cue", result.visual_cue)
        if result.suggestion:
            self._ledger.push_context(ContextType.ANALYSIS, "Suggestion",
                                      result.suggestion[:ANALYSIS_PREVIEW_CHARS])
        self._ledger.push_context(ContextType.EMOTION, "Confidence",
                                  f"{pct}% — {self.target_vibe[:VIBE_PREVIEW_CHARS]}")
        self._ledger.push_diagnostic(f"[CONF] {pct}% — {result.visual_cue[:CUE_PREVIEW_CHARS].upper()}")

        if self._on_result:
            self._on_result(result)

        if (result.confidence >= SPEAK_CONFIDENCE and result.suggestion
                and result.suggestion != self.last_spoken):
            self.last_spoken = result.suggestion
            self._ledger.push_diagnostic("[TTS] PROJECTING VOICE...")
            if self._tts is not None:
                self._spawn(self._tts.speak(result.suggestion, self._session.is_muted),
                            name="frame-speak")

    def _spawn(self, coro, name=None):
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
