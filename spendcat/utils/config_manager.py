"""
Configuration management for the spending classifier.

Handles loading, updating, and persisting configuration including
similarity thresholds, confidence defaults, batching parameters and the
keyword rule tables.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

from spendcat.database.models import MappingSource
from spendcat.matching.types import EmbeddingConfig, OracleConfig, SimilarityThresholds

logger = logging.getLogger(__name__)

# Default config path relative to project root
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / 'config' / 'classifier_config.yaml'


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""
    pass


class ConfigManager:
    """
    Manages classifier configuration.

    A YAML file is merged section by section over ``DEFAULT_CONFIG``, so a
    file only needs the keys it changes.
    """

    DEFAULT_CONFIG = {
        'thresholds': {
            'auto_apply': 0.92,
            'propagate': 0.90,
            'group': 0.88,
            'min_propagation_confidence': 0.6,
            'reclassify_below': 0.95,
        },
        'confidence': {
            'user': 1.0,
            'oracle': 0.8,
            'local': 1.0,
            'vector': 0.8,
            'propagated': 0.8,
        },
        'oracle': {
            'model': 'claude-sonnet-4-20250514',
            'batch_size': 50,
            'max_concurrency': 5,
            'batch_delay_seconds': 0.5,
            'max_retries': 2,
            'retry_base_delay': 2.0,
            'max_tokens': 4000,
        },
        'embedding': {
            'model_name': 'all-MiniLM-L6-v2',
            'embedding_dim': 384,
            'batch_size': 100,
            'max_concurrency': 10,
            'batch_delay_seconds': 0.2,
        },
        'rounds': {
            'max_rounds': 10,
        },
        'database': {
            'path': 'data/spendcat.db',
        },
        'rules': {
            'keyword_rules': [
                {'category': 'Delivery', 'patterns': [
                    'ubereats', 'uber eats', 'doordash', 'grubhub', 'deliveroo', 'postmates',
                    'delivery',
                ]},
                {'category': 'Cafe', 'patterns': [
                    'coffee', 'cafe', 'café', 'starbucks', 'espresso', 'tea house', 'bakery',
                    'donut', 'dunkin',
                ]},
                {'category': 'Drinking', 'patterns': [
                    'pub', 'brewery', 'wine bar', 'cocktail', 'tavern', 'liquor',
                ]},
                {'category': 'Food', 'patterns': [
                    'restaurant', 'kitchen', 'grill', 'pizza', 'burger', 'bbq', 'sushi',
                    'noodle', 'ramen', 'diner', 'bistro', 'mcdonald', 'kfc', 'subway sandwich',
                    'taco', 'chicken',
                ]},
                {'category': 'Transport', 'patterns': [
                    'taxi', 'uber', 'lyft', 'metro', 'transit', 'railway', 'airline', 'parking',
                    'toll', 'fuel', 'gas station', 'shell', 'chevron',
                ]},
                {'category': 'Subscription', 'patterns': [
                    'netflix', 'spotify', 'youtube premium', 'disney+', 'subscription',
                    'membership fee',
                ]},
                {'category': 'Health', 'patterns': [
                    'pharmacy', 'clinic', 'hospital', 'dental', 'medical', 'drugstore', 'cvs',
                    'walgreens',
                ]},
                {'category': 'Fitness', 'patterns': [
                    'gym', 'fitness', 'yoga', 'pilates', 'crossfit',
                ]},
                {'category': 'Culture', 'patterns': [
                    'cinema', 'theater', 'theatre', 'movie', 'museum', 'concert', 'bookstore',
                    'ticket',
                ]},
                {'category': 'Education', 'patterns': [
                    'academy', 'tuition', 'school', 'course', 'udemy', 'coursera',
                ]},
                {'category': 'Insurance', 'patterns': [
                    'insurance', 'premium payment',
                ]},
                {'category': 'Living', 'patterns': [
                    'laundry', 'electric', 'water bill', 'utility', 'telecom', 'mobile bill',
                    'hardware store',
                ]},
                {'category': 'Shopping', 'patterns': [
                    'mart', 'market', 'mall', 'department store', 'outlet', 'costco', 'walmart',
                    'target', 'ikea',
                ]},
            ],
            'pre_classify_rules': [
                {'category': 'Insurance', 'patterns': [
                    'STATE FARM', 'GEICO', 'ALLSTATE', 'PROGRESSIVE INS', 'METLIFE',
                    'PRUDENTIAL', 'AIA LIFE', 'CHUBB', 'LIBERTY MUTUAL', 'LIFE INSURANCE',
                    'FIRE INSURANCE', 'CASUALTY',
                ]},
                {'category': 'Subscription', 'patterns': [
                    'GOOGLE*', 'APPLE.COM', 'SPOTIFY', 'NETFLIX', 'YOUTUBE', 'DISNEY+',
                    'AMAZON', 'CHATGPT', 'OPENAI', 'NOTION', 'GITHUB', 'FIGMA', 'ADOBE',
                    'CANVA', 'DROPBOX', 'ICLOUD',
                ]},
                {'category': 'Etc', 'patterns': [
                    'KICC', 'KCP', 'NICE PAY', 'INICIS', 'DANAL', 'TOSS PAYMENTS', 'PAYCO',
                    'PAYMENTS',
                ]},
                {'category': 'Etc', 'patterns': [
                    'CARD APPROVAL', 'DEPOSIT NOTICE', 'BALANCE NOTICE', 'USAGE STATEMENT',
                    'AUTO DEBIT', 'CMS WITHDRAWAL',
                ]},
            ],
        },
    }

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = config_path
        self.config: dict[str, Any] = {}

        if config_path and config_path.exists():
            self.load_config(config_path)
        else:
            logger.info("No config file found, using defaults")
            self.config = self._deep_copy_dict(self.DEFAULT_CONFIG)

    @classmethod
    def from_default_path(cls) -> "ConfigManager":
        """Load ``config/classifier_config.yaml`` if it exists, else defaults."""
        return cls(DEFAULT_CONFIG_PATH)

    def load_config(self, path: Path) -> dict[str, Any]:
        """
        Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration dictionary

        Raises:
            FileNotFoundError: If config file does not exist
            yaml.YAMLError: If config file is invalid
            ConfigError: If threshold values are out of range or misordered
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                loaded_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML config: {e}")
            raise

        if not loaded_config:
            logger.warning(f"Empty config file at {path}, using defaults")
            self.config = self._deep_copy_dict(self.DEFAULT_CONFIG)
        else:
            self.config = self._merge_with_defaults(loaded_config)

        errors = self.validate_config()
        if errors:
            raise ConfigError("; ".join(errors))

        self.config_path = path
        logger.info(f"Loaded configuration from {path}")
        return self.config

    def get_threshold(self, name: str) -> float:
        """
        Get a threshold value by name.

        Raises:
            KeyError: If threshold name not found
        """
        if name not in self.config.get('thresholds', {}):
            raise KeyError(f"Threshold '{name}' not found in configuration")

        return float(self.config['thresholds'][name])

    def update_threshold(self, name: str, value: float) -> None:
        """
        Update a threshold value.

        Raises:
            ValueError: If value is out of range
        """
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"Threshold value must be between 0 and 1, got {value}")

        old_value = self.config.setdefault('thresholds', {}).get(name)
        self.config['thresholds'][name] = value
        logger.info(f"Updated threshold '{name}': {old_value} -> {value}")

    def get_thresholds(self) -> SimilarityThresholds:
        """Build the typed threshold set (validated on construction)."""
        return SimilarityThresholds.from_dict(self.config.get('thresholds', {}))

    def get_confidence(self, source: MappingSource) -> float:
        """Default confidence for a newly stored embedding of ``source``."""
        return float(self.config.get('confidence', {}).get(source.value, 0.8))

    def get_embedding_config(self) -> EmbeddingConfig:
        section = self.config.get('embedding', {})
        return EmbeddingConfig(**{k: v for k, v in section.items() if k in EmbeddingConfig.__dataclass_fields__})

    def get_oracle_config(self) -> OracleConfig:
        section = self.config.get('oracle', {})
        return OracleConfig(**{k: v for k, v in section.items() if k in OracleConfig.__dataclass_fields__})

    def get_rules(self, table: str) -> List[Dict[str, Any]]:
        """
        Get a rule table by name.

        Args:
            table: 'keyword_rules' or 'pre_classify_rules'

        Raises:
            KeyError: If the table is not configured
        """
        rules = self.config.get('rules', {})
        if table not in rules:
            raise KeyError(f"Rule table '{table}' not found in configuration")
        return rules[table]

    def get_max_rounds(self) -> int:
        return int(self.config.get('rounds', {}).get('max_rounds', 10))

    def get_database_path(self) -> str:
        return str(self.config.get('database', {}).get('path', 'data/spendcat.db'))

    def save_config(self, path: Optional[Path] = None) -> None:
        """
        Save configuration to YAML file.

        Raises:
            ValueError: If no path provided and no config_path set
        """
        save_path = path or self.config_path

        if not save_path:
            raise ValueError("No path provided and no config_path set")

        save_path.parent.mkdir(parents=True, exist_ok=True)
        with open(save_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(
                self.config,
                f,
                default_flow_style=False,
                sort_keys=False,
                indent=2,
                allow_unicode=True,
            )

        logger.info(f"Saved configuration to {save_path}")

    def get_all_config(self) -> dict[str, Any]:
        return self._deep_copy_dict(self.config)

    def reset_to_defaults(self) -> None:
        """Reset configuration to default values."""
        self.config = self._deep_copy_dict(self.DEFAULT_CONFIG)
        logger.info("Configuration reset to defaults")

    def _merge_with_defaults(self, loaded_config: dict) -> dict:
        """Merge loaded config with defaults to ensure all keys exist."""
        merged = self._deep_copy_dict(self.DEFAULT_CONFIG)

        for section, values in loaded_config.items():
            if section in merged and isinstance(values, dict):
                merged[section].update(values)
            else:
                merged[section] = values

        return merged

    def _deep_copy_dict(self, d: dict) -> dict:
        return copy.deepcopy(d)

    def validate_config(self) -> list[str]:
        """
        Validate the current configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        thresholds = self.config.get('thresholds', {})
        for name, value in thresholds.items():
            if not isinstance(value, (int, float)):
                errors.append(f"Threshold '{name}' must be numeric, got {type(value)}")
            elif not 0.0 <= value <= 1.0:
                errors.append(f"Threshold '{name}' must be between 0 and 1, got {value}")

        if not errors:
            auto_apply = thresholds.get('auto_apply', 0.92)
            propagate = thresholds.get('propagate', 0.90)
            group = thresholds.get('group', 0.88)
            if not auto_apply >= propagate >= group:
                errors.append("Thresholds must satisfy auto_apply >= propagate >= group")

        for table in ('keyword_rules', 'pre_classify_rules'):
            for rule in self.config.get('rules', {}).get(table, []):
                if not isinstance(rule, dict) or 'category' not in rule or not rule.get('patterns'):
                    errors.append(f"Rule in '{table}' needs a category and at least one pattern")

        oracle = self.config.get('oracle', {})
        for key in ('batch_size', 'max_concurrency'):
            if key in oracle and (not isinstance(oracle[key], int) or oracle[key] < 1):
                errors.append(f"oracle.{key} must be a positive integer")

        return errors
