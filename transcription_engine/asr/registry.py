"""Transcription provider registry with configuration-driven selection.

Maps provider name strings to provider classes. Use
get_transcription_provider() to instantiate a provider by name with
provider-specific configuration.
"""

from transcription_engine.asr.aws_transcribe import AwsTranscribeProvider
from transcription_engine.asr.interface import TranscriptionProvider
from transcription_engine.asr.speechmatics import SpeechmaticsProvider
from transcription_engine.utils.errors import ProviderError

PROVIDERS: dict[str, type[TranscriptionProvider]] = {
    "speechmatics": SpeechmaticsProvider,
    "aws-transcribe": AwsTranscribeProvider,
}


def get_transcription_provider(
    provider: str, **kwargs: object
) -> TranscriptionProvider:
    """Create a transcription provider instance by name.

    Args:
        provider: Provider name (e.g., "speechmatics", "aws-transcribe").
        **kwargs: Provider-specific configuration passed to the constructor.

    Returns:
        An initialized TranscriptionProvider instance.

    Raises:
        ProviderError: If the provider name is not registered.
    """
    provider_cls = PROVIDERS.get(provider)
    if not provider_cls:
        available = ", ".join(sorted(PROVIDERS.keys()))
        raise ProviderError(
            f"Unknown transcription provider: '{provider}'. Available: {available}",
            operation="init",
            provider=provider,
        )
    return provider_cls(**kwargs)
