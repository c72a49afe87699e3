"""
Audio Controller.

Turns caller audio into a user message (speech-to-text) and the final
assistant text into speech (text-to-speech). Only transcripts and audio
metadata enter the conversation; audio bytes are handed back to the
caller and never stored.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..domain.entities import AudioDirection, AudioEventItem
from ..domain.ports import ISpeechProvider, ITranscriptionProvider
from ..exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

MAX_AUDIO_BYTES = 25 * 1024 * 1024


class AudioController:
    """Speech-to-text and text-to-speech for voice turns.

    Usage:
        audio = AudioController(transcriber, synthesizer, voice_id="alloy")
        text, item = await audio.transcribe(wav_bytes)
        speech, item = await audio.synthesize("Hello there")
    """

    def __init__(
        self,
        transcriber: Optional[ITranscriptionProvider] = None,
        synthesizer: Optional[ISpeechProvider] = None,
        voice_id: Optional[str] = None,
        speed: float = 1.0,
        language: Optional[str] = None,
    ):
        self.transcriber = transcriber
        self.synthesizer = synthesizer
        self.voice_id = voice_id
        self.speed = speed
        self.language = language

    @property
    def can_transcribe(self) -> bool:
        return self.transcriber is not None

    @property
    def can_speak(self) -> bool:
        return self.synthesizer is not None

    async def transcribe(
        self,
        audio: bytes,
        language: Optional[str] = None,
        mime_type: str = "audio/wav",
    ) -> tuple[str, AudioEventItem]:
        """Transcribe caller audio.

        Returns:
            Tuple of (transcript, input audio record)

        Raises:
            ConfigurationError: If no transcription provider is configured
            ValidationError: If the audio is empty, too large, or yields no speech
        """
        if self.transcriber is None:
            raise ConfigurationError("No transcription provider configured")
        if not audio:
            raise ValidationError("Audio input is empty", field="audio")
        if len(audio) > MAX_AUDIO_BYTES:
            raise ValidationError(
                f"Audio input exceeds {MAX_AUDIO_BYTES} bytes", field="audio"
            )

        transcript = await self.transcriber.transcribe(
            audio,
            language=language or self.language,
            mime_type=mime_type,
        )
        transcript = (transcript or "").strip()
        if not transcript:
            raise ValidationError("No speech detected in audio input", field="audio")

        logger.info(f"Transcribed {len(audio)} bytes of audio into {len(transcript)} chars")
        item = AudioEventItem(
            direction=AudioDirection.INPUT,
            transcript=transcript,
            mime_type=mime_type,
            size_bytes=len(audio),
        )
        return transcript, item

    async def synthesize(self, text: str) -> tuple[bytes, AudioEventItem]:
        """Speak text with the configured voice.

        Returns:
            Tuple of (encoded audio, output audio record)
        """
        if self.synthesizer is None:
            raise ConfigurationError("No speech provider configured")

        audio = await self.synthesizer.synthesize(text, voice_id=self.voice_id, speed=self.speed)
        logger.info(f"Synthesized {len(audio)} bytes of speech for {len(text)} chars")
        item = AudioEventItem(
            direction=AudioDirection.OUTPUT,
            transcript=text,
            voice_id=self.voice_id,
            mime_type=self.synthesizer.mime_type,
            size_bytes=len(audio),
        )
        return audio, item
