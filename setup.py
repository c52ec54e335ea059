from setuptools import setup

setup(
    name='pyPageSync',
    version='0.1.0',
    author="J M Franck",
    packages=['pagesync',],
    python_requires=">=3.8",
    install_requires=["watchdog", "PyYAML"],
    extras_require={"test": ["pytest"]},
    entry_points=dict(
        console_scripts=["pgsync = pagesync.command_line:main",])
)
