"""
Configuration loader for FireFund
Defaults, then config/firefund.yaml, then environment overrides
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path('config/firefund.yaml')


def default_config() -> Dict[str, Any]:
    """Built-in configuration used when nothing else is provided"""
    return {
        'database': {
            'url': 'sqlite+aiosqlite:///./data/firefund.db',
            'echo': False
        },
        'api': {
            'host': '0.0.0.0',
            'port': 8080,
            'cors_origins': ['*']
        },
        'auth': {
            'session_ttl_hours': 24 * 7,
            'password_iterations': 260_000
        },
        'n8n': {
            'webhook_url': '',
            'api_key': '',
            'webhook_secret': '',
            'timeout': 30,
            'verify_ssl': True,
            'callback_base_url': 'http://localhost:8080'
        },
        'smtp': {
            'host': 'localhost',
            'port': 587,
            'username': '',
            'password': '',
            'use_tls': True,
            'use_ssl': False,
            'timeout': 30,
            'from_email': 'no-reply@firefund.local',
            'from_name': 'Amicale des Sapeurs-Pompiers'
        },
        'receipts': {
            'delivery': 'n8n',
            'association_name': "Amicale des Sapeurs-Pompiers",
            'association_address': '',
            'association_siren': 'À compléter',
            'association_rna': 'À compléter',
            'legal_text': 'Ce reçu vous est délivré à des fins comptables et justificatives.',
            'template_version': 'v1',
            'idempotency_ttl_seconds': 300
        },
        'qr': {
            'interaction_ttl_minutes': 30,
            'default_payment_link_url': '',
            'default_amount': 10.0,
            'calendars_per_donation': 1
        },
        'client': {
            'server_url': 'http://localhost:8080',
            'storage_path': 'data/offline-storage.json',
            'token': '',
            'reconnect_delay': 1.0,
            'enqueue_delay': 0.1,
            'inter_item_delay': 0.5,
            'periodic_interval': 30.0,
            'check_interval': 15.0,
            'request_timeout': 30.0
        },
        'logging': {
            'level': 'INFO',
            'file': None
        }
    }


def load_config(yaml_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load configuration from environment and YAML files"""

    load_dotenv()

    config = default_config()

    yaml_path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH

    if yaml_path.exists():
        try:
            with open(yaml_path, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
            if yaml_config:
                _deep_update(config, yaml_config)
                logger.info(f"Configuration loaded from {yaml_path}")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load configuration from {yaml_path}: {e}")
            logger.error("Using default configuration")
    else:
        logger.info(f"Configuration file {yaml_path} not found, using defaults")

    _apply_env_overrides(config)

    return config


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override configuration values from environment variables"""
    if os.getenv('DATABASE_URL'):
        config['database']['url'] = os.getenv('DATABASE_URL')

    if os.getenv('FIREFUND_N8N_WEBHOOK_URL'):
        config['n8n']['webhook_url'] = os.getenv('FIREFUND_N8N_WEBHOOK_URL')

    if os.getenv('FIREFUND_N8N_API_KEY'):
        config['n8n']['api_key'] = os.getenv('FIREFUND_N8N_API_KEY')

    if os.getenv('FIREFUND_N8N_SECRET'):
        config['n8n']['webhook_secret'] = os.getenv('FIREFUND_N8N_SECRET')

    if os.getenv('SMTP_HOST'):
        config['smtp']['host'] = os.getenv('SMTP_HOST')

    if os.getenv('SMTP_PORT'):
        config['smtp']['port'] = int(os.getenv('SMTP_PORT'))

    if os.getenv('SMTP_USERNAME'):
        config['smtp']['username'] = os.getenv('SMTP_USERNAME')

    if os.getenv('SMTP_PASSWORD'):
        config['smtp']['password'] = os.getenv('SMTP_PASSWORD')

    if os.getenv('FIREFUND_PAYMENT_LINK_URL'):
        config['qr']['default_payment_link_url'] = os.getenv('FIREFUND_PAYMENT_LINK_URL')

    if os.getenv('FIREFUND_SERVER_URL'):
        config['client']['server_url'] = os.getenv('FIREFUND_SERVER_URL')

    if os.getenv('FIREFUND_TOKEN'):
        config['client']['token'] = os.getenv('FIREFUND_TOKEN')

    if os.getenv('LOG_LEVEL'):
        config['logging']['level'] = os.getenv('LOG_LEVEL', 'INFO').upper()


def _deep_update(base_dict: Dict[str, Any], update_dict: Dict[str, Any]) -> None:
    """Deep update nested dictionary"""
    for key, value in update_dict.items():
        if key in base_dict and isinstance(base_dict[key], dict) and isinstance(value, dict):
            _deep_update(base_dict[key], value)
        else:
            base_dict[key] = value
