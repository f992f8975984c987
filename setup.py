"""Setup configuration for dora_metrics"""

from setuptools import setup, find_packages

setup(
    name="dora-metrics-job",
    version="0.1.0",
    description=(
        "Batch job deriving DORA metrics from GitHub pull requests: lead time "
        "for changes, corrective deploys and time to recovery."
    ),
    author="DORA Metrics Job Contributors",
    author_email="",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "requests>=2.28.0",
        "google-cloud-bigquery>=3.11.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "black>=22.0",
            "flake8>=4.0",
            "mypy>=0.950",
        ],
    },
    entry_points={
        "console_scripts": [
            "dora-metrics=dora_metrics.main:main",
        ],
    },
)
