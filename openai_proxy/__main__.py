from openai_proxy.server import main

main()
