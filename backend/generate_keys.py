import secrets
import os
from cryptography.fernet import Fernet

# Generate secrets
internal_api_key = secrets.token_urlsafe(32)
fernet_key = Fernet.generate_key().decode()

print(f"Generated INTERNAL_API_KEY: {internal_api_key}")
print(f"Generated TOKEN_ENCRYPTION_KEY: {fernet_key}")

template_path = ".env.template"
env_path = ".env"

if os.path.exists(template_path):
    with open(template_path, "r") as f:
        content = f.read()

    # Only the two secret lines are replaced; everything else is kept as-is
    new_lines = []
    for line in content.splitlines():
        if line.startswith("INTERNAL_API_KEY="):
            new_lines.append(f"INTERNAL_API_KEY={internal_api_key}")
        elif line.startswith("TOKEN_ENCRYPTION_KEY="):
            new_lines.append(f"TOKEN_ENCRYPTION_KEY={fernet_key}")
        else:
            new_lines.append(line)

    with open(env_path, "w") as f:
        f.write("\n".join(new_lines))

    print(f"Successfully wrote to {env_path}")

else:
    print(f"Error: {template_path} not found. Please ensure it exists.")
