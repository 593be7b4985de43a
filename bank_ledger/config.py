"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Bank ledger configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///bank_ledger.db"  # memory:// for tests
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Lockout configuration
    login_max_failed_attempts: int = 3
    transaction_pin_max_failed_attempts: int = 3
    session_timeout_minutes: int = 30
    default_admin_username: str = "admin"  # Protected from deletion; manages admin contacts
    
    # OTP configuration
    otp_length: int = 6
    otp_expiry_minutes: int = 5
    
    # Duplicate request suppression
    duplicate_window_seconds: float = 3.0
    
    # Business rules configuration
    min_debit_amount: str = "100.00"  # Withdraw and transfer floor
    min_opening_balance_savings: str = "1000.00"
    min_opening_balance_current: str = "1000.00"
    min_opening_balance_student: str = "0.00"
    student_age_limit: int = 18
    loan_min_balance_ratio: str = "0.25"
    loan_review_min_balance: str = "5000.00"
    loan_review_min_deposits: str = "20000.00"
    loan_review_months: int = 6
    mini_statement_size: int = 5
    
    # Notification configuration
    notifications_enabled: bool = True
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0
    notification_sender: str = "no-reply@astronova.bank"
    
    # Report encryption
    report_kdf_iterations: int = 200000
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
