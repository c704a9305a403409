from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_name: str = "AquaBill Manager"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./aquabill.db"

    # Billing
    bill_due_days: int = 15
    currency: str = "INR"

    # Flat codes
    flat_code_length: int = 8
    flat_code_max_attempts: int = 10

    # Payment proofs
    upload_dir: str = "uploads"
    max_proof_size_mb: int = 5

    class Config:
        env_file = ".env"


settings = Settings()
