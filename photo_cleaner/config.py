from dataclasses import dataclass, field
from typing import List
import yaml
from pathlib import Path


@dataclass
class FingerprintConfig:
    """Configuration for photo fingerprinting"""
    method: str = "perceptual"  # Options: perceptual, multires
    allow_fallback: bool = True  # Dimension-based fingerprint when decoding fails
    base_size: int = 64
    resolutions: List[int] = field(default_factory=lambda: [8, 16, 32])
    base_jpeg_quality: int = 30
    jpeg_quality: int = 10
    max_image_pixels: int = 100_000_000


@dataclass
class SimilarityConfig:
    """Hamming distance thresholds, in bits out of 256"""
    near_duplicate_threshold: int = 10
    identical_threshold: int = 5

    def validate(self):
        if not 0 <= self.identical_threshold <= self.near_duplicate_threshold <= 256:
            raise ValueError(
                "similarity thresholds must satisfy 0 <= identical <= near_duplicate <= 256"
            )


@dataclass
class GroupingConfig:
    """Configuration for duplicate grouping"""
    clustering: str = "seed"  # Options: seed, union_find
    clear_existing_groups: bool = False


@dataclass
class SystemConfig:
    """System-wide configuration"""
    n_workers: int = 4
    database_path: str = "data/photo_cleaner.db"
    trash_dir: str = "data/trash"
    log_dir: str = "logs"
    log_level: str = "INFO"
    show_progress: bool = True
    session_retention_days: int = 90

    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        config_dict = {
            'n_workers': self.n_workers,
            'database_path': self.database_path,
            'trash_dir': self.trash_dir,
            'log_dir': self.log_dir,
            'log_level': self.log_level,
            'show_progress': self.show_progress,
            'session_retention_days': self.session_retention_days,
            'fingerprint': {
                'method': self.fingerprint.method,
                'allow_fallback': self.fingerprint.allow_fallback,
                'base_size': self.fingerprint.base_size,
                'resolutions': list(self.fingerprint.resolutions),
                'base_jpeg_quality': self.fingerprint.base_jpeg_quality,
                'jpeg_quality': self.fingerprint.jpeg_quality,
                'max_image_pixels': self.fingerprint.max_image_pixels
            },
            'similarity': {
                'near_duplicate_threshold': self.similarity.near_duplicate_threshold,
                'identical_threshold': self.similarity.identical_threshold
            },
            'grouping': {
                'clustering': self.grouping.clustering,
                'clear_existing_groups': self.grouping.clear_existing_groups
            }
        }

        with open(path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        config = cls()

        # Load system settings
        config.n_workers = config_dict.get('n_workers', config.n_workers)
        config.database_path = config_dict.get('database_path', config.database_path)
        config.trash_dir = config_dict.get('trash_dir', config.trash_dir)
        config.log_dir = config_dict.get('log_dir', config.log_dir)
        config.log_level = config_dict.get('log_level', config.log_level)
        config.show_progress = config_dict.get('show_progress', config.show_progress)
        config.session_retention_days = config_dict.get(
            'session_retention_days', config.session_retention_days
        )

        # Load fingerprint settings
        if 'fingerprint' in config_dict:
            fp = config_dict['fingerprint']
            config.fingerprint = FingerprintConfig(
                method=fp.get('method', config.fingerprint.method),
                allow_fallback=fp.get('allow_fallback', config.fingerprint.allow_fallback),
                base_size=fp.get('base_size', config.fingerprint.base_size),
                resolutions=fp.get('resolutions', config.fingerprint.resolutions),
                base_jpeg_quality=fp.get('base_jpeg_quality', config.fingerprint.base_jpeg_quality),
                jpeg_quality=fp.get('jpeg_quality', config.fingerprint.jpeg_quality),
                max_image_pixels=fp.get('max_image_pixels', config.fingerprint.max_image_pixels)
            )

        # Load similarity thresholds
        if 'similarity' in config_dict:
            sim = config_dict['similarity']
            config.similarity = SimilarityConfig(
                near_duplicate_threshold=sim.get(
                    'near_duplicate_threshold', config.similarity.near_duplicate_threshold
                ),
                identical_threshold=sim.get(
                    'identical_threshold', config.similarity.identical_threshold
                )
            )

        # Load grouping settings
        if 'grouping' in config_dict:
            gr = config_dict['grouping']
            config.grouping = GroupingConfig(
                clustering=gr.get('clustering', config.grouping.clustering),
                clear_existing_groups=gr.get(
                    'clear_existing_groups', config.grouping.clear_existing_groups
                )
            )

        config.similarity.validate()
        return config
