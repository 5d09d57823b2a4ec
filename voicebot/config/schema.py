"""
Configuration models for the voicebot dialer.

Pydantic v2 models validated from the merged YAML + environment data built
by `voicebot.config.load_config`.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AsteriskConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8088)
    scheme: str = Field(default="http")
    username: str
    password: str
    app_name: str = Field(default="voicebot")
    connect_timeout_sec: float = Field(default=10.0)
    connect_attempts: int = Field(default=5)
    reconnect_attempts: int = Field(default=10)
    reconnect_backoff_sec: float = Field(default=2.0)
    reconnect_backoff_max_sec: float = Field(default=30.0)
    # {number} is replaced by dial_prefix + the contact's phone number
    endpoint_template: str = Field(default="PJSIP/{number}@trunk")
    dial_prefix: str = Field(default="")
    caller_id: str = Field(default="Voicebot")
    originate_timeout_sec: int = Field(default=30)
    # 'ari' routes answered calls into the Stasis app; 'agi' into a dialplan running FastAGI
    control_mode: str = Field(default="ari")
    agi_context: str = Field(default="voicebot-agi")
    agi_extension: str = Field(default="s")
    recording_dir: str = Field(default="/var/spool/asterisk/recording")


class AGIConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=4573)
    command_timeout_sec: float = Field(default=10.0)
    variable_timeout_sec: float = Field(default=5.0)


class DispatcherConfig(BaseModel):
    max_concurrent_calls: int = Field(default=2, ge=1)
    unanswered_timeout_sec: float = Field(default=45.0)
    saturated_backoff_sec: float = Field(default=5.0)
    dispatch_interval_sec: float = Field(default=2.0)
    release_advance_delay_sec: float = Field(default=0.5)


class AudioConfig(BaseModel):
    sounds_dir: str = Field(default="/var/lib/asterisk/sounds/custom")
    sound_prefix: str = Field(default="custom")
    agi_recordings_dir: str = Field(default="/tmp/voicebot_recordings")
    playback_sample_rate: int = Field(default=8000)
    transcription_sample_rate: int = Field(default=16000)
    playback_timeout_sec: float = Field(default=30.0)
    record_max_duration_sec: int = Field(default=8)
    record_max_silence_sec: float = Field(default=1.0)
    terminator_digit: str = Field(default="#")
    vad_rms_threshold: float = Field(default=0.001)
    enhance_enabled: bool = Field(default=True)
    sox_binary: str = Field(default="sox")
    sox_timeout_sec: float = Field(default=5.0)
    highpass_hz: int = Field(default=200)
    lowpass_hz: int = Field(default=3400)
    normalize_db: float = Field(default=-3.0)
    trim_silence: bool = Field(default=True)
    retention_hours: float = Field(default=24.0)
    sweep_interval_sec: float = Field(default=3600.0)
    fallback_prompt: str = Field(default="an-error-has-occurred")


class RepromptConfig(BaseModel):
    not_heard: str = Field(default="Perdona, no te escuché bien. ¿Podrías repetir?")
    speak_closer: str = Field(default="¿Podrías hablar un poco más cerca del teléfono?")
    generation_failed: str = Field(default="Disculpa, permíteme continuar.")


class ConversationConfig(BaseModel):
    company_name: str = Field(default="Navetec")
    agent_name: str = Field(default="Sofía")
    greeting: str = Field(
        default=(
            "Hola {name}, habla {agent} de {company}. Te llamo porque tenemos una nave "
            "industrial disponible en {location} que podría interesarte. ¿Tienes un minuto?"
        )
    )
    system_prompt: str = Field(
        default=(
            "Eres {agent}, asesora comercial de {company}. Llamas por teléfono para ofrecer "
            "naves industriales. Responde en español, en una o dos frases cortas y naturales. "
            "Tu objetivo es agendar una visita. Si el cliente no está interesado, despídete "
            "con amabilidad diciendo 'gracias por tu tiempo'."
        )
    )
    farewell: str = Field(default="Perfecto, gracias por tu tiempo. Que tengas buen día.")
    language: str = Field(default="es")
    max_turns: int = Field(default=8)
    max_call_duration_sec: float = Field(default=300.0)
    history_limit: int = Field(default=10)
    listen_max_duration_sec: int = Field(default=3)
    listen_silence_sec: float = Field(default=1.0)
    stt_timeout_sec: float = Field(default=10.0)
    llm_timeout_sec: float = Field(default=8.0)
    closing_phrases: List[str] = Field(
        default_factory=lambda: ["gracias por tu tiempo", "que tengas buen día", "hasta luego", "adiós"]
    )
    reprompts: RepromptConfig = Field(default_factory=RepromptConfig)
    pitch_enabled: bool = Field(default=True)
    quick_replies_enabled: bool = Field(default=True)
    quick_replies: Dict[str, str] = Field(default_factory=dict)


class AnalysisConfig(BaseModel):
    """Appointment creation policy; every rule can be switched off independently."""
    use_llm: bool = Field(default=True)
    timeout_sec: float = Field(default=15.0)
    create_on_appointment_intent: bool = Field(default=True)
    create_on_agreement: bool = Field(default=True)
    create_on_high_interest: bool = Field(default=True)
    create_on_date_and_time: bool = Field(default=True)
    default_interest_level: str = Field(default="medium")


class OpenAIProviderConfig(BaseModel):
    api_key: Optional[str] = None
    organization: Optional[str] = None
    stt_base_url: str = Field(default="https://api.openai.com/v1/audio/transcriptions")
    chat_base_url: str = Field(default="https://api.openai.com/v1")
    tts_base_url: str = Field(default="https://api.openai.com/v1/audio/speech")
    stt_model: str = Field(default="whisper-1")
    stt_prompt: Optional[str] = Field(
        default="Conversación telefónica sobre renta o venta de naves industriales."
    )
    chat_model: str = Field(default="gpt-4o-mini")
    analysis_model: str = Field(default="gpt-4o")
    temperature: float = Field(default=0.7)
    max_tokens: int = Field(default=80)
    presence_penalty: float = Field(default=0.3)
    frequency_penalty: float = Field(default=0.3)
    tts_model: str = Field(default="tts-1")
    voice: str = Field(default="nova")
    speed: float = Field(default=0.95)
    tts_sample_rate_hz: int = Field(default=24000)
    tts_timeout_sec: float = Field(default=10.0)
    response_timeout_sec: float = Field(default=8.0)


class ProvidersConfig(BaseModel):
    openai: OpenAIProviderConfig = Field(default_factory=OpenAIProviderConfig)


class HealthConfig(BaseModel):
    enabled: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=15000)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")
    to_file: bool = Field(default=False)
    file_path: str = Field(default="logs/voicebot.log")


class StoreConfig(BaseModel):
    seed_file: Optional[str] = None


class CampaignsConfig(BaseModel):
    autostart: List[str] = Field(default_factory=list)


class AppConfig(BaseModel):
    asterisk: AsteriskConfig
    agi: AGIConfig = Field(default_factory=AGIConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    campaigns: CampaignsConfig = Field(default_factory=CampaignsConfig)
