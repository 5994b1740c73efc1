from stake_o_matic.orchestrator import main


if __name__ == "__main__":
    main()
