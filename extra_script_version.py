# extra_script_version.py (Project root)
#
# platformio.ini:
#   extra_scripts = pre:extra_script_version.py
import sys

Import("env")

# fw_version.py sits next to this script unless it was pip-installed
sys.path.insert(0, env.subst("$PROJECT_DIR"))
import fw_version  # noqa: E402

try:
    descriptor = fw_version.resolve_version(
        env.subst("$PROJECT_DIR"),
        safe_directory=env.GetProjectOption("custom_fw_version_safe_directory", "no") == "yes",
    )
except fw_version.VersionError as e:
    # a wrong version baked into the firmware is worse than no build
    print(f"\033[91mError: cannot derive firmware version: {e}\033[0m")
    env.Exit(1)

# FW_VERSION_MAJOR/MINOR/PATCH/HASH/DIRTY_INDEX and env['PIOENV_FW_VERSION']
fw_version.apply_to_env(env, descriptor)
print(f"=== Firmware version: {env['PIOENV_FW_VERSION']} ===")
