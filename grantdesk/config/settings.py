from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    vault_root: str = "./vault"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Analyzer (Claude Agent SDK)
    anthropic_model: str = ""
    analyzer_interval_seconds: float = 2.0
    crawler_interval_seconds: float = 1.0
    strategy_fit_threshold: int = 60

    # Program listing APIs
    odcloud_api_key: str = ""
    odcloud_endpoint_path: str = "/15049270/v1/uddi:6b5d729e-28f8-4404-afae-c3f46842ff11"
    data_go_kr_api_key: str = ""

    # Streaming client
    client_inactivity_timeout_seconds: float = 120.0

    class Config:
        env_file = ".env"
