"""Setup configuration for mrflow"""

from setuptools import setup, find_packages

setup(
    name="gitlab-mr-flow",
    version="0.1.0",
    description=(
        "CLI tool for GitLab merge request flow analysis: development, wait, "
        "review and merge phase breakdowns across many MRs."
    ),
    author="GitLab MR Flow Contributors",
    author_email="",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "requests>=2.28.0",
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
            "gitlab-mr-flow=mrflow.main:main",
        ],
    },
)
