# Same pipeline as rust_ci.yaml, written with the Python DSL.
#
#   cimatrix run sample_pipelines/rust_ci_pipeline.py --event pull_request

from cimatrix import all_of, build, define_pipeline, matrix, matrix_eq, sh, success

PATHS = [
    ".cargo/**",
    "sample_configs/**",
    "src/**",
    "tests/**",
    "build.rs",
    "Cargo.lock",
    "Cargo.toml",
    "clippy.toml",
    "rustfmt.toml",
]

SUPPORTED = [
    {"os": "ubuntu-latest", "target": "x86_64-unknown-linux-gnu", "cross": False},
    {"os": "ubuntu-latest", "target": "aarch64-unknown-linux-gnu", "cross": True},
    {"os": "macOS-latest", "target": "x86_64-apple-darwin", "cross": False},
    {"os": "windows-2019", "target": "x86_64-pc-windows-msvc", "cross": False},
]


def cargo(name, args, **kw):
    """One step per runner binary; the matrix picks cargo or cross."""
    return [
        sh(name, f"cargo {args}", gate=all_of(success(), matrix_eq("info.cross", False)), **kw),
        sh(f"{name} (cross)", f"cross {args}", gate=all_of(success(), matrix_eq("info.cross", True)), **kw),
    ]


def pipeline():
    backtrace = {"RUST_BACKTRACE": "full"}

    supported = matrix(
        "supported",
        sh("Check cargo fmt", "cargo fmt --all -- --check"),
        *cargo("Build tests", "test --no-run --locked {features} --target={info[target]}", env=backtrace),
        *cargo(
            "Run tests",
            "test --no-fail-fast {features} --target={info[target]} -- --nocapture --quiet",
            env=backtrace,
        ),
        sh(
            "Run clippy",
            "cargo clippy {features} --all-targets --workspace --target={info[target]} -- -D warnings",
            env=backtrace,
        ),
        axes={"info": SUPPORTED, "features": ["--all-features", "--no-default-features"]},
        toolchain={"channel": "stable", "target": "{info[target]}", "components": ["rustfmt", "clippy"]},
    )

    other = build("other_check").best_effort().toolchain(channel="{rust}", target="{target}")
    other.axis("rust", "stable", "beta")
    other.axis("target", "x86_64-unknown-linux-musl", "i686-pc-windows-msvc", "x86_64-pc-windows-gnu")
    other.exclude(rust="beta", target="i686-pc-windows-msvc")
    other.define_step("Check", "cargo +{rust} check --all-targets --verbose --target={target} --locked")

    return define_pipeline("ci", supported, other.build(), paths=PATHS)
