import os
import sys

Import("env")
sys.path.insert(0, env.subst("$PROJECT_DIR"))
import fw_version  # noqa: E402

# --- Configuration ---
# Where the generated header goes, relative to the project directory.
# Override with `custom_fw_version_header = src/version.h` in platformio.ini.
DEFAULT_HEADER_PATH = os.path.join("include", "version.h")


def generate_version_header(env):
    """
    Runs before compilation so every source file sees the current version.
    """
    project_dir = env.subst("$PROJECT_DIR")
    header_path = os.path.join(
        project_dir,
        env.GetProjectOption("custom_fw_version_header", DEFAULT_HEADER_PATH),
    )

    try:
        descriptor = fw_version.resolve_version(
            project_dir,
            safe_directory=env.GetProjectOption("custom_fw_version_safe_directory", "no") == "yes",
        )
    except fw_version.VersionError as e:
        print(f"\033[91mError: {e}\033[0m")
        print(f"\033[91mNot writing {header_path}\033[0m")
        # Exit with a non-zero code to fail the build
        env.Exit(1)
        return

    print(f"--- Version header ---")
    print(f"File   : {header_path}")
    print(f"Version: {descriptor}")
    if fw_version.write_header(descriptor, header_path):
        print(f"\033[92mGenerated {os.path.basename(header_path)}\033[0m")
    else:
        print(f"\033[92mUp to date, left untouched.\033[0m")
    print("----------------------")


generate_version_header(env)
