"""py2app build configuration for MicDrop.app

Build a standalone macOS .app bundle:
    python setup_app.py py2app          # production build
    python setup_app.py py2app -A       # development build (symlinked)

Output: dist/MicDrop.app
"""

from setuptools import setup

APP = ["micdrop/menubar_main.py"]
DATA_FILES = []
OPTIONS = {
    "argv_emulation": False,  # Must be False for menu bar apps
    "plist": {
        "CFBundleName": "MicDrop",
        "CFBundleDisplayName": "MicDrop",
        "CFBundleIdentifier": "com.micdrop.app",
        "CFBundleVersion": "1.4.0",
        "CFBundleShortVersionString": "1.4.0",
        "LSUIElement": True,  # Menu bar only, no Dock icon
        "LSMinimumSystemVersion": "12.0",
        "NSMicrophoneUsageDescription": (
            "MicDrop reads your microphone's mute state so it can toggle it "
            "from the menu bar, a hotkey, or a webhook."
        ),
        "NSAppleEventsUsageDescription": (
            "MicDrop uses accessibility to listen for its global hotkey."
        ),
        "NSLocalNetworkUsageDescription": (
            "MicDrop accepts toggle requests from iOS Shortcuts on your local network."
        ),
    },
    "packages": [
        "micdrop",
        "numpy",
        "sounddevice",
        "pynput",
        "pyperclip",
        "rumps",
        "dotenv",
    ],
    "includes": [
        "objc",
        "AppKit",
        "Foundation",
    ],
    "excludes": [
        "tkinter",
        "test",
        "unittest",
        "matplotlib",
        "scipy",
        "PIL",
        "IPython",
        "pytest",
    ],
    "semi_standalone": False,
    "site_packages": True,
}

setup(
    app=APP,
    name="MicDrop",
    data_files=DATA_FILES,
    options={"py2app": OPTIONS},
    setup_requires=["py2app"],
)
