from pathlib import Path

from setuptools import find_namespace_packages, setup

# Load packages from requirements.txt
BASE_DIR = Path(__file__).parent
with open(Path(BASE_DIR, "requirements.txt")) as file:
    required_packages = [ln.strip() for ln in file.readlines() if ln.strip() and not ln.startswith("#")]

# Define our package
setup(
    name="progression-engine",
    version="0.1.0",
    description="Adaptive practice and progression engine: grade placement, mastery, rewards and recommendations",
    python_requires=">=3.10",
    packages=find_namespace_packages(include=["progression_engine", "progression_engine.*"]),
    package_data={"progression_engine": ["schemas/*.json"]},
    install_requires=required_packages,
    extras_require={
        "dev": ["pytest>=7.4"],
    },
)
